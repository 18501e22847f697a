"""Local state store and drift detection.

State is a per-project JSON cache of last-observed reality. One local writer
per project is assumed; there is no locking.
"""

from __future__ import annotations

import json
import os
import tempfile
import time
from pathlib import Path

from pydantic import ValidationError

from convoy.config.defaults import DEFAULT_STATE_DIR
from convoy.lib.errors import StateError
from convoy.models.config import ConvoyConfig
from convoy.models.state import (
    DriftReport,
    HealthState,
    LocalState,
    ServerState,
    ServiceState,
)


def now_unix() -> int:
    """Current time in whole seconds since the epoch."""
    return int(time.time())


def sanitize_project_key(project: str) -> str:
    """Map a project name to a safe file stem.

    ASCII alphanumerics, ``-`` and ``_`` are kept; everything else becomes
    ``-``. An empty name maps to ``default``.
    """
    sanitized = "".join(
        c if (c.isascii() and c.isalnum()) or c in "-_" else "-" for c in project
    )
    return sanitized or "default"


def state_file_path(project: str, state_dir: Path | None = None) -> Path:
    """Return the state file path for a project."""
    base = state_dir if state_dir is not None else DEFAULT_STATE_DIR
    return base / f"{sanitize_project_key(project)}.json"


def load_state(project: str, state_dir: Path | None = None) -> LocalState:
    """Load a project's state from disk.

    A missing or blank file yields an empty state for the project.

    Raises:
        StateError: If the file cannot be read or does not match the schema
    """
    path = state_file_path(project, state_dir)
    if not path.exists():
        return LocalState(project=project, updated_at_unix=now_unix())

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StateError(
            str(path), f"Failed to read local state file {path}: {exc}"
        ) from exc
    if not content.strip():
        return LocalState(project=project, updated_at_unix=now_unix())

    try:
        state = LocalState.model_validate_json(content)
    except ValidationError as exc:
        raise StateError(
            str(path), f"Invalid local state format in {path}: {exc}"
        ) from exc

    if not state.project:
        state.project = project
    return state


def save_state(state: LocalState, state_dir: Path | None = None) -> Path:
    """Persist state atomically, refreshing ``updated_at_unix``.

    The document is written to a temporary file in the same directory and
    renamed over the target, so readers never see a partial file.

    Raises:
        StateError: If the file cannot be written
    """
    state.updated_at_unix = now_unix()
    path = state_file_path(state.project, state_dir)
    payload = json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as exc:
        raise StateError(
            str(path), f"Failed to write local state file {path}: {exc}"
        ) from exc
    return path


def detect_drift(state: LocalState, config: ConvoyConfig) -> DriftReport:
    """Compare declared server and service names with the cached ones."""
    desired_servers = {server.name for server in config.servers}
    cached_servers = set(state.servers)
    desired_services = set(config.services)
    cached_services = set(state.services)

    return DriftReport(
        missing_servers_in_cache=sorted(desired_servers - cached_servers),
        extra_servers_in_cache=sorted(cached_servers - desired_servers),
        missing_services_in_cache=sorted(desired_services - cached_services),
        extra_services_in_cache=sorted(cached_services - desired_services),
    )


def server_health_from_status(status: str | None) -> HealthState:
    """Map a provider server status to a health state."""
    if not status:
        return HealthState.UNKNOWN
    lowered = status.lower()
    if lowered == "running":
        return HealthState.HEALTHY
    if lowered in ("creating", "initializing", "starting"):
        return HealthState.DEGRADED
    return HealthState.UNHEALTHY


def container_health_from_status(status: str | None) -> HealthState:
    """Map container status text to a health state."""
    if not status:
        return HealthState.UNKNOWN
    lowered = status.lower()
    if "up" in lowered or "running" in lowered:
        return HealthState.HEALTHY
    if "restart" in lowered or "start" in lowered or "created" in lowered:
        return HealthState.DEGRADED
    return HealthState.UNHEALTHY


def record_server(
    state: LocalState,
    name: str,
    provider: str,
    *,
    server_id: str | None = None,
    public_ip: str | None = None,
    status: str | None = None,
    error: str | None = None,
) -> ServerState:
    """Create or update a server entry with a fresh observation."""
    entry = state.servers.get(name) or ServerState(provider=provider)
    entry.provider = provider
    if server_id is not None:
        entry.id = server_id
    if public_ip is not None:
        entry.public_ip = public_ip
    entry.last_status = status
    if error and not status:
        entry.health = HealthState.UNHEALTHY
    else:
        entry.health = server_health_from_status(status)
    entry.last_checked_unix = now_unix()
    entry.last_error = error
    state.servers[name] = entry
    return entry


def record_service(
    state: LocalState,
    name: str,
    image: str,
    *,
    status: str | None = None,
    error: str | None = None,
    container: str | None = None,
    deploy_command: str | None = None,
    image_origin: str | None = None,
) -> ServiceState:
    """Create or update a service entry with a fresh observation.

    Passing ``deploy_command`` marks the observation as a deploy and updates
    the deploy time, replicas and container list.
    """
    entry = state.services.get(name) or ServiceState(image=image)
    entry.image = image
    entry.last_status = status
    if error:
        entry.health = HealthState.UNHEALTHY
    else:
        entry.health = container_health_from_status(status)
    entry.last_error = error
    now = now_unix()
    entry.last_checked_unix = now
    if deploy_command is not None:
        entry.last_deploy_command = deploy_command
        entry.last_deploy_unix = now
        entry.replicas = 1
        entry.containers = [container or name]
    if image_origin is not None:
        entry.image_origin = image_origin
    state.services[name] = entry
    return entry


def remove_server(state: LocalState, name: str) -> bool:
    """Drop a server entry; returns whether one existed."""
    return state.servers.pop(name, None) is not None


def remove_service(state: LocalState, name: str) -> bool:
    """Drop a service entry; returns whether one existed."""
    return state.services.pop(name, None) is not None
