"""Pydantic models for the desired-state configuration file.

This module defines the schema of ``convoy.yaml``: the project block, the
servers to provision, the container services to run and the provisioning
scripts and hooks that gate each phase.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from convoy.config.defaults import DEFAULT_SCRIPT_SHELL


class DeployMode(str, Enum):
    """Where service containers are deployed."""

    LOCAL = "local"
    REMOTE = "remote"


class IdempotencyMode(str, Enum):
    """When a provisioning script is allowed to run again."""

    ALWAYS = "always"
    ONCE = "once"
    ON_CHANGE = "on-change"


class HookPhase(str, Enum):
    """Lifecycle points at which hook scripts run."""

    PRE_PROVISION = "pre_provision"
    POST_PROVISION = "post_provision"
    POST_DEPLOY = "post_deploy"


class ProjectConfig(BaseModel):
    """Project identity and default deploy mode.

    Attributes:
        name: Project name, also used as the state file key
        description: Optional free-form description
        deploy_mode: Default deploy mode for all services
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., description="Project name")
    description: str | None = Field(default=None, description="Project description")
    deploy_mode: DeployMode | None = Field(
        default=None, description="Default deploy mode (local or remote)"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Reject empty project names."""
        if not v.strip():
            raise ValueError("Project name cannot be empty")
        return v


class ServerConfig(BaseModel):
    """A server to provision through a compute provider.

    Attributes:
        name: Unique server name
        provider: Provider name (e.g. hetzner)
        region: Provider region/location, empty to let the provider choose
        server_type: Provider machine type
        ssh_key: SSH key reference (path or provider key name)
        floating_ip: Attach a floating IP after creation
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., description="Server name")
    provider: str = Field(..., description="Compute provider name")
    region: str = Field(default="", description="Provider region or location")
    server_type: str = Field(..., description="Provider server type")
    ssh_key: str = Field(..., description="SSH key path or provider key name")
    floating_ip: bool = Field(default=False, description="Attach a floating IP")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Reject empty server names."""
        if not v.strip():
            raise ValueError("Server name cannot be empty")
        return v

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Reject empty provider names."""
        if not v.strip():
            raise ValueError("Server provider cannot be empty")
        return v


class InfraConfig(BaseModel):
    """Infrastructure section."""

    model_config = ConfigDict(extra="forbid")

    servers: list[ServerConfig] = Field(
        default_factory=list, description="Servers to provision"
    )

    @model_validator(mode="after")
    def validate_unique_names(self) -> InfraConfig:
        """Server names must be unique."""
        seen: set[str] = set()
        for server in self.servers:
            if server.name in seen:
                raise ValueError(f"Duplicate server name: {server.name}")
            seen.add(server.name)
        return self


class HttpHealthcheckConfig(BaseModel):
    """HTTP probe executed from the target host.

    Attributes:
        url: Full URL; overrides port and path when set
        path: Request path (default /health)
        port: Port to probe (default: first service port)
        expected_status: Expected HTTP status code (default 200)
        timeout_secs: Per-request timeout
    """

    model_config = ConfigDict(extra="forbid")

    url: str | None = Field(default=None, description="Full probe URL")
    path: str | None = Field(default=None, description="Request path")
    port: int | None = Field(default=None, ge=1, le=65535, description="Probe port")
    expected_status: int | None = Field(
        default=None, ge=100, le=599, description="Expected HTTP status"
    )
    timeout_secs: int | None = Field(
        default=None, ge=1, description="Request timeout in seconds"
    )


class TcpHealthcheckConfig(BaseModel):
    """TCP connect probe executed from the target host."""

    model_config = ConfigDict(extra="forbid")

    host: str | None = Field(default=None, description="Host to connect to")
    port: int = Field(..., ge=1, le=65535, description="Port to connect to")
    timeout_secs: int | None = Field(
        default=None, ge=1, description="Connect timeout in seconds"
    )


class HealthcheckConfig(BaseModel):
    """Service health probe definition.

    Exactly how a service is judged healthy after deploy. At least one of
    ``command``, ``http``, ``tcp``, ``any`` or ``all`` must be set; ``any``
    and ``all`` nest further healthchecks.
    """

    model_config = ConfigDict(extra="forbid")

    command: list[str] = Field(
        default_factory=list, description="Command executed inside the container"
    )
    http: HttpHealthcheckConfig | None = Field(default=None, description="HTTP probe")
    tcp: TcpHealthcheckConfig | None = Field(default=None, description="TCP probe")
    any: list[HealthcheckConfig] | None = Field(
        default=None, description="Passes when any nested probe passes"
    )
    all: list[HealthcheckConfig] | None = Field(
        default=None, description="Passes when every nested probe passes"
    )
    interval_secs: int | None = Field(
        default=None, ge=0, description="Seconds between attempts"
    )
    retries: int | None = Field(default=None, ge=1, description="Maximum attempts")
    timeout_secs: int | None = Field(
        default=None, ge=1, description="Probe timeout in seconds"
    )

    def has_probe(self) -> bool:
        return bool(
            self.command or self.http or self.tcp or self.any or self.all
        )

    @model_validator(mode="after")
    def validate_probe(self) -> HealthcheckConfig:
        """Every healthcheck node, nested ones included, must declare a probe."""
        if self.any is not None and not self.any:
            raise ValueError("Healthcheck 'any' must list at least one probe")
        if self.all is not None and not self.all:
            raise ValueError("Healthcheck 'all' must list at least one probe")
        if not self.has_probe():
            raise ValueError(
                "Healthcheck must include one of: command/http/tcp/any/all"
            )
        return self

    def http_probes(self) -> list[HttpHealthcheckConfig]:
        """HTTP probes of this node and every nested node."""
        probes = [self.http] if self.http is not None else []
        for child in (self.any or []) + (self.all or []):
            probes.extend(child.http_probes())
        return probes


class ServiceConfig(BaseModel):
    """A container service to run.

    Attributes:
        image: Container image reference
        ports: Ports published host:container one-to-one
        env: Environment variables passed to the container
        volumes: Volume specs passed verbatim to the runtime
        depends_on: Services that must be deployed first
        target_server: Server to deploy to in remote mode
        healthcheck: Post-deploy health gate
        deploy_mode: Per-service override of project.deploy_mode
    """

    model_config = ConfigDict(extra="forbid")

    image: str = Field(..., description="Container image")
    ports: list[int] = Field(default_factory=list, description="Published ports")
    env: dict[str, str] = Field(default_factory=dict, description="Container env")
    volumes: list[str] = Field(default_factory=list, description="Volume specs")
    depends_on: list[str] = Field(
        default_factory=list, description="Service dependencies"
    )
    target_server: str | None = Field(default=None, description="Target server")
    healthcheck: HealthcheckConfig | None = Field(
        default=None, description="Post-deploy healthcheck"
    )
    deploy_mode: DeployMode | None = Field(
        default=None, description="Per-service deploy mode override"
    )

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        """Reject empty images."""
        if not v.strip():
            raise ValueError("Service image cannot be empty")
        return v

    @field_validator("ports")
    @classmethod
    def validate_ports(cls, v: list[int]) -> list[int]:
        """Ports must be valid TCP ports."""
        for port in v:
            if port < 1 or port > 65535:
                raise ValueError(f"Invalid port: {port}. Must be 1-65535")
        return v

    @model_validator(mode="after")
    def validate_http_probe_ports(self) -> ServiceConfig:
        """HTTP probes need a URL, an explicit port or a published port."""
        if self.healthcheck is None or self.ports:
            return self
        for http in self.healthcheck.http_probes():
            if http.url is None and http.port is None:
                raise ValueError(
                    "http healthcheck requires `http.url`, `http.port` or "
                    "service ports"
                )
        return self


class ScriptRetryConfig(BaseModel):
    """Retry policy for a provisioning script."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=1, ge=1, description="Maximum attempts")
    transient_only: bool = Field(
        default=False, description="Only retry errors that look transient"
    )


class ScriptConfig(BaseModel):
    """A provisioning script run on one or more servers.

    Attributes:
        target: ``all`` or ``server:<name>``
        file: Script path, relative to the configuration file
        shell: Interpreter used on the server
        args: Arguments appended to the invocation
        env: Environment variables for the script
        idempotency: always, once or on-change
        timeout_secs: Wall-clock limit enforced on the server
        retry: Retry policy
    """

    model_config = ConfigDict(extra="forbid")

    target: str = Field(..., description="all or server:<name>")
    file: str = Field(..., description="Script path relative to the config file")
    shell: str = Field(default=DEFAULT_SCRIPT_SHELL, description="Interpreter")
    args: list[str] = Field(default_factory=list, description="Script arguments")
    env: dict[str, str] = Field(default_factory=dict, description="Script env")
    idempotency: IdempotencyMode = Field(
        default=IdempotencyMode.ALWAYS, description="Re-run policy"
    )
    timeout_secs: int | None = Field(
        default=None, ge=1, description="Timeout in seconds"
    )
    retry: ScriptRetryConfig = Field(
        default_factory=ScriptRetryConfig, description="Retry policy"
    )

    @field_validator("target", "file")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        """Reject blank target and file values."""
        if not v.strip():
            raise ValueError("cannot be empty")
        return v


class HooksConfig(BaseModel):
    """Scripts to run at lifecycle points, in order."""

    model_config = ConfigDict(extra="forbid")

    pre_provision: list[str] = Field(default_factory=list)
    post_provision: list[str] = Field(default_factory=list)
    post_deploy: list[str] = Field(default_factory=list)

    def for_phase(self, phase: HookPhase) -> list[str]:
        return list(getattr(self, phase.value))

    def is_empty(self) -> bool:
        return not (self.pre_provision or self.post_provision or self.post_deploy)


class ConvoyConfig(BaseModel):
    """Root of the desired-state configuration."""

    model_config = ConfigDict(extra="forbid")

    project: ProjectConfig = Field(..., description="Project settings")
    infra: InfraConfig = Field(
        default_factory=InfraConfig, description="Infrastructure"
    )
    services: dict[str, ServiceConfig] = Field(
        default_factory=dict, description="Services keyed by name"
    )
    scripts: dict[str, ScriptConfig] = Field(
        default_factory=dict, description="Scripts keyed by name"
    )
    hooks: HooksConfig = Field(default_factory=HooksConfig, description="Hooks")

    @model_validator(mode="after")
    def validate_hooks(self) -> ConvoyConfig:
        """Hooks must only reference declared scripts."""
        if self.hooks.is_empty():
            return self
        if not self.scripts:
            raise ValueError("Hooks configured but no scripts defined")
        for phase in HookPhase:
            for name in self.hooks.for_phase(phase):
                if name not in self.scripts:
                    raise ValueError(
                        f"Hook '{phase.value}' references unknown script '{name}'"
                    )
        return self

    @property
    def servers(self) -> list[ServerConfig]:
        return self.infra.servers

    def get_server(self, name: str) -> ServerConfig | None:
        for server in self.infra.servers:
            if server.name == name:
                return server
        return None
