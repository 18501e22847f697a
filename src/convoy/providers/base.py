"""Base interface for compute providers."""

from __future__ import annotations

from abc import ABC, abstractmethod

from convoy.models.provider import (
    CapacityResolveOptions,
    CreateRequestValidation,
    CreateServerRequest,
    ProviderCapabilities,
    Server,
)


class MetalProvider(ABC):
    """Abstract base class for compute providers that create servers."""

    name: str = ""

    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        """Describe what this provider supports."""

    @abstractmethod
    async def create_server(self, request: CreateServerRequest) -> Server:
        """Create a server and return it once the provider accepted the request.

        Args:
            request: Server name, type, region and SSH key reference.

        Returns:
            The created server.

        Raises:
            ProviderError: If the provider rejects the request.
        """

    @abstractmethod
    async def destroy_server(self, server_id: str) -> None:
        """Destroy a server by provider identifier.

        Raises:
            ProviderError: If the destroy call fails.
        """

    @abstractmethod
    async def get_server(self, server_id: str) -> Server:
        """Fetch a single server by provider identifier.

        Raises:
            ProviderError: If the server cannot be fetched.
        """

    @abstractmethod
    async def list_servers(self) -> list[Server]:
        """List all servers visible to the configured credentials.

        Raises:
            ProviderError: If the list call fails.
        """

    @abstractmethod
    async def upload_ssh_key(self, name: str, public_key_path: str) -> str:
        """Upload a public key and return its provider identifier.

        Raises:
            ProviderError: If the upload fails.
        """

    @abstractmethod
    async def attach_floating_ip(self, server_id: str) -> str:
        """Attach a floating IP to a server and return the address.

        Raises:
            ProviderError: If the IP cannot be created or assigned.
        """

    async def validate_create_request(
        self, request: CreateServerRequest
    ) -> CreateRequestValidation:
        """Check a create request against provider capacity.

        Providers without a capacity catalogue accept every request.
        """
        return CreateRequestValidation(valid=True)

    async def resolve_create_request(
        self, request: CreateServerRequest, options: CapacityResolveOptions
    ) -> CreateServerRequest:
        """Rewrite a create request to something the provider can satisfy.

        The default returns the request unchanged.
        """
        return request.model_copy()

    async def aclose(self) -> None:
        """Release any network resources held by the provider."""
        return None
