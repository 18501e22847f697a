"""Checks that run before any server is created."""

from __future__ import annotations

from dataclasses import dataclass

from convoy.lib.errors import PreflightError
from convoy.models.config import ServerConfig
from convoy.models.provider import (
    CapacityResolveOptions,
    CreateRequestValidation,
    CreateServerRequest,
)
from convoy.providers.base import MetalProvider
from convoy.runtime.transport import resolve_identity_path

__all__ = [
    "PERMANENT_PROVIDER_MARKERS",
    "ServerPreflight",
    "check_ssh_key_path",
    "create_request_for",
    "format_validation_error",
    "is_permanent_provider_error",
    "resolve_identity_path",
    "resolve_server_request",
]

PERMANENT_PROVIDER_MARKERS = (
    "invalid_input",
    "unsupported",
    "not available",
    "unknown server type",
    "invalid location",
    "forbidden",
    "unauthorized",
    "authentication",
)


@dataclass
class ServerPreflight:
    """A provider-resolved create request and the provider's verdict on it."""

    request: CreateServerRequest
    validation: CreateRequestValidation


def create_request_for(server: ServerConfig) -> CreateServerRequest:
    return CreateServerRequest(
        name=server.name,
        server_type=server.server_type,
        region=server.region,
        ssh_key=server.ssh_key,
        attach_floating_ip=server.floating_ip,
    )


def check_ssh_key_path(server: ServerConfig) -> None:
    """Ensure the server's ssh key reference points at an existing file.

    Raises:
        PreflightError: If no key file can be found
    """
    if resolve_identity_path(server.ssh_key) is None:
        raise PreflightError(
            server.name,
            f"infra '{server.name}': ssh_key path '{server.ssh_key}' not found",
        )


async def resolve_server_request(
    provider: MetalProvider,
    server: ServerConfig,
    options: CapacityResolveOptions | None = None,
) -> ServerPreflight:
    """Let the provider rewrite and then validate a server's create request."""
    resolved = await provider.resolve_create_request(
        create_request_for(server), options or CapacityResolveOptions()
    )
    validation = await provider.validate_create_request(resolved)
    return ServerPreflight(request=resolved, validation=validation)


def format_validation_error(server: ServerConfig, preflight: ServerPreflight) -> str:
    """Render a failed validation with its corrections, joined by `` | ``."""
    validation = preflight.validation
    parts = [
        f"infra '{server.name}': {validation.reason or 'invalid provider request'}"
    ]
    if validation.valid_regions_for_type:
        parts.append(
            f"valid regions for server_type '{preflight.request.server_type}': "
            + ", ".join(validation.valid_regions_for_type)
        )
    if validation.valid_server_types_for_region:
        parts.append(
            f"valid server types for region '{preflight.request.region}': "
            + ", ".join(validation.valid_server_types_for_region)
        )
    if validation.suggested_region:
        parts.append(f"suggested patch: region={validation.suggested_region}")
    if validation.suggested_server_type:
        parts.append(
            f"suggested patch: server_type={validation.suggested_server_type}"
        )
    return " | ".join(parts)


def is_permanent_provider_error(error: BaseException) -> bool:
    """Return True when retrying a provider call cannot help."""
    message = str(error).lower()
    return any(marker in message for marker in PERMANENT_PROVIDER_MARKERS)
