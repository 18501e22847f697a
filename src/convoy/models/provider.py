"""Provider-facing models shared by compute provider implementations."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ServerStatus(str, Enum):
    """Normalized server lifecycle status."""

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    DELETING = "deleting"
    ERROR = "error"


class Server(BaseModel):
    """A server as reported by a compute provider."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., description="Provider server id")
    name: str = Field(..., description="Server name")
    status: ServerStatus = Field(..., description="Normalized status")
    public_ip: str | None = Field(default=None, description="Public IPv4 address")
    private_ip: str | None = Field(default=None, description="Private address")
    server_type: str = Field(default="", description="Provider server type")
    region: str = Field(default="", description="Provider region")


class CreateServerRequest(BaseModel):
    """Parameters for creating a server."""

    model_config = ConfigDict(extra="forbid")

    name: str
    server_type: str
    region: str = ""
    ssh_key: str
    attach_floating_ip: bool = False


class CreateRequestValidation(BaseModel):
    """Provider verdict on a create request, with suggested corrections."""

    model_config = ConfigDict(extra="forbid")

    valid: bool = True
    reason: str | None = None
    valid_regions_for_type: list[str] = Field(default_factory=list)
    valid_server_types_for_region: list[str] = Field(default_factory=list)
    suggested_region: str | None = None
    suggested_server_type: str | None = None
    permanent: bool = False


class CapacityResolveOptions(BaseModel):
    """How aggressively a provider may rewrite a create request."""

    model_config = ConfigDict(extra="forbid")

    auto_fallback: bool = False
    resolve_capacity: bool = False


class ProviderCapabilities(BaseModel):
    """What a provider can do, answered without credentials."""

    model_config = ConfigDict(extra="forbid")

    supports_public_ip: bool = False
    supports_direct_ssh: bool = False
    supports_provider_ssh: bool = False
    supports_server_create: bool = False
    supports_server_destroy: bool = False
