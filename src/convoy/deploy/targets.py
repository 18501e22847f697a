"""Runtime target resolution.

A target is chosen per service per operation and never cached between
operations.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from convoy.lib.errors import (
    DeployError,
    TargetServerNotFoundError,
    UnsafeLocalDeployError,
    UnsupportedProviderError,
)
from convoy.models.config import ConvoyConfig, DeployMode, ServerConfig, ServiceConfig
from convoy.providers import PROVIDER_CAPABILITIES


@dataclass
class LocalTarget:
    """The container runtime on this machine."""

    def describe(self) -> str:
        return "local"


@dataclass
class RemoteTarget:
    """The container runtime on a declared server, reached over ssh."""

    server: ServerConfig

    def describe(self) -> str:
        return f"server:{self.server.name}"


RuntimeTarget = Union[LocalTarget, RemoteTarget]


def effective_deploy_mode(config: ConvoyConfig, service: ServiceConfig) -> DeployMode:
    """Return the deploy mode for a service.

    Service override first, then ``project.deploy_mode``, then remote when
    any server is declared and local otherwise.
    """
    if service.deploy_mode is not None:
        return service.deploy_mode
    if config.project.deploy_mode is not None:
        return config.project.deploy_mode
    return DeployMode.REMOTE if config.servers else DeployMode.LOCAL


def resolve_target(
    config: ConvoyConfig,
    service_name: str,
    service: ServiceConfig,
    allow_local_deploy: bool = False,
) -> RuntimeTarget:
    """Choose where a service should be deployed.

    Args:
        config: Desired configuration
        service_name: Service name, used in error messages
        service: Service configuration
        allow_local_deploy: Permit local deploys while servers are declared

    Returns:
        LocalTarget or RemoteTarget

    Raises:
        UnsafeLocalDeployError: Local mode with servers declared and no override
        TargetServerNotFoundError: No server, or the named server is not declared
        UnsupportedProviderError: The server's provider has no direct shell access
    """
    mode = effective_deploy_mode(config, service)

    if mode == DeployMode.LOCAL:
        if config.servers and not allow_local_deploy:
            raise UnsafeLocalDeployError(service_name)
        return LocalTarget()

    if mode == DeployMode.REMOTE:
        if not config.servers:
            raise TargetServerNotFoundError(service_name, service.target_server)
        target_name = service.target_server or config.servers[0].name
        server = config.get_server(target_name)
        if server is None:
            raise TargetServerNotFoundError(service_name, target_name)
        capabilities = PROVIDER_CAPABILITIES.get(server.provider)
        if capabilities is not None and not capabilities.supports_direct_ssh:
            raise UnsupportedProviderError(service_name, server.provider)
        return RemoteTarget(server=server)

    raise DeployError(
        operation="resolve_target",
        message=f"Invalid deploy mode '{mode}'. Expected local|remote",
        resource=service_name,
    )
