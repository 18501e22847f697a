"""Local state models persisted between runs."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class HealthState(str, Enum):
    """Coarse health of a server or service, derived from status text."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class ServerState(BaseModel):
    """Last observed state of a provisioned server."""

    model_config = ConfigDict(extra="ignore")

    provider: str = Field(..., description="Compute provider name")
    id: str | None = Field(default=None, description="Provider server id")
    public_ip: str | None = Field(default=None, description="Public IPv4 address")
    health: HealthState = Field(default=HealthState.UNKNOWN)
    last_status: str | None = Field(default=None, description="Raw provider status")
    last_checked_unix: int = Field(default=0, description="Last observation time")
    last_error: str | None = Field(default=None, description="Last error message")


class ServiceState(BaseModel):
    """Last observed state of a deployed service."""

    model_config = ConfigDict(extra="ignore")

    image: str = Field(..., description="Deployed image")
    replicas: int = Field(default=1, description="Running replicas")
    containers: list[str] = Field(default_factory=list, description="Container names")
    health: HealthState = Field(default=HealthState.UNKNOWN)
    last_status: str | None = Field(default=None, description="Raw container status")
    last_checked_unix: int = Field(default=0, description="Last observation time")
    last_error: str | None = Field(default=None, description="Last error message")
    last_deploy_command: str | None = Field(
        default=None, description="Command that performed the last deploy"
    )
    last_deploy_unix: int | None = Field(default=None, description="Last deploy time")
    image_origin: str | None = Field(
        default=None, description="Where the deployed image reference came from"
    )


class ScriptRunState(BaseModel):
    """Record of the last successful run of a script on one server."""

    model_config = ConfigDict(extra="ignore")

    last_hash: str | None = Field(default=None, description="sha256 of script body")
    last_run_unix: int = Field(default=0, description="Last successful run time")


class LocalState(BaseModel):
    """Top-level state document, one per project.

    State is an advisory cache of last-observed reality. It is never the
    source of truth for what should exist.
    """

    model_config = ConfigDict(extra="ignore")

    project: str = Field(default="", description="Project name")
    updated_at_unix: int = Field(default=0, description="Last save time")
    servers: dict[str, ServerState] = Field(default_factory=dict)
    services: dict[str, ServiceState] = Field(default_factory=dict)
    script_runs: dict[str, ScriptRunState] = Field(
        default_factory=dict, description="Script runs keyed by script@server"
    )


class DriftReport(BaseModel):
    """Name-level differences between desired config and cached state."""

    model_config = ConfigDict(extra="forbid")

    missing_servers_in_cache: list[str] = Field(default_factory=list)
    extra_servers_in_cache: list[str] = Field(default_factory=list)
    missing_services_in_cache: list[str] = Field(default_factory=list)
    extra_services_in_cache: list[str] = Field(default_factory=list)

    @property
    def has_drift(self) -> bool:
        return bool(
            self.missing_servers_in_cache
            or self.extra_servers_in_cache
            or self.missing_services_in_cache
            or self.extra_services_in_cache
        )
