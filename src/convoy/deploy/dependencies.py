"""Dependency-ordered rollout planning for services."""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum

from convoy.lib.errors import (
    CircularDependencyError,
    ServiceNotFoundError,
    UnknownDependencyError,
)
from convoy.models.config import ServiceConfig


class _Mark(Enum):
    IN_PROGRESS = 1
    DONE = 2


def deployment_order(
    services: Mapping[str, ServiceConfig], root: str | None = None
) -> list[str]:
    """Return service names so that every dependency precedes its dependents.

    The traversal is depth-first post-order. Roots and each service's
    dependencies are visited in lexicographic order, so the result does not
    depend on mapping insertion order.

    Args:
        services: Services keyed by name
        root: Restrict the result to this service and its transitive
            dependencies

    Returns:
        Ordered service names without duplicates

    Raises:
        ServiceNotFoundError: If ``root`` is not declared
        UnknownDependencyError: If a service depends on an undeclared service
        CircularDependencyError: If the dependency graph has a cycle
    """
    marks: dict[str, _Mark] = {}
    order: list[str] = []

    def visit(name: str) -> None:
        mark = marks.get(name)
        if mark is _Mark.DONE:
            return
        if mark is _Mark.IN_PROGRESS:
            raise CircularDependencyError(name)

        marks[name] = _Mark.IN_PROGRESS
        for dependency in sorted(set(services[name].depends_on)):
            if dependency not in services:
                raise UnknownDependencyError(name, dependency)
            visit(dependency)
        marks[name] = _Mark.DONE
        order.append(name)

    if root is not None:
        if root not in services:
            raise ServiceNotFoundError(root)
        visit(root)
        return order

    for name in sorted(services):
        visit(name)
    return order


def transitive_dependents(
    services: Mapping[str, ServiceConfig], name: str
) -> set[str]:
    """Return every service that depends on ``name``, directly or indirectly."""
    dependents: set[str] = set()
    frontier = [name]
    while frontier:
        current = frontier.pop()
        for candidate, service in services.items():
            if current in service.depends_on and candidate not in dependents:
                dependents.add(candidate)
                frontier.append(candidate)
    return dependents
