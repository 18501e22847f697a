"""Compute providers for Convoy servers."""

from __future__ import annotations

from convoy.lib.errors import ProviderError
from convoy.models.provider import ProviderCapabilities
from convoy.providers.base import MetalProvider
from convoy.providers.hetzner import HETZNER_CAPABILITIES, HetznerProvider

# Capabilities are answerable without credentials or a network client.
PROVIDER_CAPABILITIES: dict[str, ProviderCapabilities] = {
    "hetzner": HETZNER_CAPABILITIES,
    "fly": ProviderCapabilities(
        supports_public_ip=True,
        supports_direct_ssh=False,
        supports_provider_ssh=True,
        supports_server_create=True,
        supports_server_destroy=True,
    ),
}


def provider_capabilities(name: str) -> ProviderCapabilities:
    """Return the capabilities of a provider by name.

    Unknown providers report no capabilities.
    """
    caps = PROVIDER_CAPABILITIES.get(name)
    return caps.model_copy() if caps else ProviderCapabilities()


def get_provider(name: str, options: dict[str, str] | None = None) -> MetalProvider:
    """Create a compute provider client by name."""
    if name == "hetzner":
        return HetznerProvider(options)

    if name == "fly":
        raise ProviderError(
            provider=name,
            operation="configure",
            message=(
                "Fly.io provider is not implemented yet. "
                "Hetzner is the only supported provider for now."
            ),
        )

    raise ProviderError(
        provider=name,
        operation="configure",
        message=f"Unsupported metal provider: {name}",
    )


__all__ = [
    "HetznerProvider",
    "MetalProvider",
    "PROVIDER_CAPABILITIES",
    "get_provider",
    "provider_capabilities",
]
