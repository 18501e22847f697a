"""Hetzner Cloud provider implementation."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx

from convoy.config.env_loader import get_env_var
from convoy.lib.errors import ProviderError
from convoy.models.provider import (
    CapacityResolveOptions,
    CreateRequestValidation,
    CreateServerRequest,
    ProviderCapabilities,
    Server,
    ServerStatus,
)
from convoy.providers.base import MetalProvider

logger = logging.getLogger(__name__)

HETZNER_API_URL = "https://api.hetzner.cloud/v1"
HETZNER_TOKEN_ENV_VARS = ("HETZNER_API_KEY", "HETZNER_API_TOKEN", "HETZNER_TOKEN")
DEFAULT_IMAGE = "ubuntu-24.04"
DEFAULT_REGION = "ash"
PREFERRED_REGIONS = ("ash", "hel1", "nbg1", "fsn1", "hil")

_STATUS_MAP = {
    "initializing": ServerStatus.CREATING,
    "starting": ServerStatus.CREATING,
    "running": ServerStatus.RUNNING,
    "stopping": ServerStatus.STOPPED,
    "off": ServerStatus.STOPPED,
    "deleting": ServerStatus.DELETING,
}

HETZNER_CAPABILITIES = ProviderCapabilities(
    supports_public_ip=True,
    supports_direct_ssh=True,
    supports_provider_ssh=False,
    supports_server_create=True,
    supports_server_destroy=True,
)


def convert_status(status: str) -> ServerStatus:
    """Map a Hetzner server status to the normalized status."""
    return _STATUS_MAP.get(status, ServerStatus.ERROR)


def convert_server(payload: dict[str, Any]) -> Server:
    """Convert a Hetzner server object into a Server."""
    public_net = payload.get("public_net") or {}
    ipv4 = public_net.get("ipv4") or {}
    private_net = payload.get("private_net") or []
    datacenter = payload.get("datacenter") or {}
    location = datacenter.get("location") or {}
    server_type = payload.get("server_type") or {}
    raw_status = payload.get("status", "")
    return Server(
        id=str(payload["id"]),
        name=payload.get("name", ""),
        status=convert_status(raw_status),
        public_ip=ipv4.get("ip"),
        private_ip=private_net[0].get("ip") if private_net else None,
        server_type=server_type.get("name", ""),
        region=location.get("name", ""),
    )


def choose_preferred_region(available: list[str]) -> str | None:
    """Pick the first preferred region that is available, else the first one."""
    for preferred in PREFERRED_REGIONS:
        if preferred in available:
            return preferred
    return available[0] if available else None


def _is_key_path(ssh_key: str) -> bool:
    return ssh_key.startswith("~") or ssh_key.startswith("/")


class HetznerProvider(MetalProvider):
    """Create and manage servers through the Hetzner Cloud REST API."""

    name = "hetzner"

    def __init__(
        self,
        options: dict[str, str] | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the Hetzner client.

        Args:
            options: Provider options; ``api_token`` overrides the environment
            transport: Optional httpx transport (used by tests)

        Raises:
            ProviderError: If no API token is configured
        """
        options = options or {}
        token = options.get("api_token")
        if not token:
            for env_var in HETZNER_TOKEN_ENV_VARS:
                token = get_env_var(env_var)
                if token:
                    break
        if not token:
            raise ProviderError(
                provider=self.name,
                operation="configure",
                message=(
                    "Hetzner API token not found in provider options or env vars "
                    + "/".join(HETZNER_TOKEN_ENV_VARS)
                ),
            )

        self._client = httpx.AsyncClient(
            base_url=options.get("base_url", HETZNER_API_URL),
            headers={
                "Authorization": f"Bearer {token}",
                "User-Agent": "convoy/0.1.0",
            },
            timeout=httpx.Timeout(30.0, connect=10.0),
            transport=transport,
        )

    def capabilities(self) -> ProviderCapabilities:
        return HETZNER_CAPABILITIES.model_copy()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            raise ProviderError(
                provider=self.name,
                operation=operation,
                message=f"request to {path} failed: {exc}",
            ) from exc
        if response.is_error:
            raise ProviderError(
                provider=self.name,
                operation=operation,
                message=response.text,
                status_code=response.status_code,
            )
        return response

    async def _json(
        self,
        method: str,
        path: str,
        operation: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(method, path, operation, json=json)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                provider=self.name,
                operation=operation,
                message=f"invalid JSON response: {exc}",
                status_code=response.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(
                provider=self.name,
                operation=operation,
                message="unexpected response shape",
                status_code=response.status_code,
            )
        return data

    async def create_server(self, request: CreateServerRequest) -> Server:
        logger.info("Creating Hetzner server: %s", request.name)

        if _is_key_path(request.ssh_key):
            ssh_key = await self.upload_ssh_key(f"{request.name}-key", request.ssh_key)
        else:
            ssh_key = request.ssh_key

        payload = {
            "name": request.name,
            "server_type": request.server_type,
            "location": request.region or DEFAULT_REGION,
            "image": DEFAULT_IMAGE,
            "ssh_keys": [ssh_key],
            "public_net": {"enable_ipv4": True, "enable_ipv6": False},
        }
        data = await self._json("POST", "/servers", "create_server", json=payload)
        if not data.get("server"):
            raise ProviderError(
                provider=self.name,
                operation="create_server",
                message="No server in response",
            )
        server = convert_server(data["server"])

        if request.attach_floating_ip:
            logger.debug("Attaching floating IP to server: %s", server.id)
            server.public_ip = await self.attach_floating_ip(server.id)

        logger.info("Created Hetzner server: %s (%s)", request.name, server.id)
        return server

    async def destroy_server(self, server_id: str) -> None:
        logger.info("Destroying Hetzner server: %s", server_id)
        await self._request("DELETE", f"/servers/{server_id}", "destroy_server")

    async def get_server(self, server_id: str) -> Server:
        logger.debug("Getting Hetzner server: %s", server_id)
        data = await self._json("GET", f"/servers/{server_id}", "get_server")
        if not data.get("server"):
            raise ProviderError(
                provider=self.name,
                operation="get_server",
                message="No server in response",
            )
        return convert_server(data["server"])

    async def list_servers(self) -> list[Server]:
        logger.debug("Listing Hetzner servers")
        data = await self._json("GET", "/servers", "list_servers")
        return [convert_server(item) for item in data.get("servers") or []]

    async def upload_ssh_key(self, name: str, public_key_path: str) -> str:
        logger.info("Uploading SSH key: %s", name)
        key_path = Path(public_key_path).expanduser()
        try:
            public_key = key_path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ProviderError(
                provider=self.name,
                operation="upload_ssh_key",
                message=f"Failed to read SSH public key {key_path}: {exc}",
            ) from exc

        try:
            data = await self._json(
                "POST",
                "/ssh_keys",
                "upload_ssh_key",
                json={"name": name, "public_key": public_key},
            )
        except ProviderError as exc:
            if "uniqueness_error" not in exc.message:
                raise
            existing = await self._find_existing_ssh_key_id(name, public_key)
            if existing is None:
                raise
            logger.info("SSH key already exists; reusing id %s for %s", existing, name)
            return existing

        key_id = (data.get("ssh_key") or {}).get("id")
        if key_id is None:
            raise ProviderError(
                provider=self.name,
                operation="upload_ssh_key",
                message="No SSH key ID in response",
            )
        return str(key_id)

    async def _find_existing_ssh_key_id(self, name: str, public_key: str) -> str | None:
        data = await self._json("GET", "/ssh_keys", "list_ssh_keys")
        for key in data.get("ssh_keys") or []:
            existing_key = key.get("public_key", "").strip()
            if key.get("name") == name or existing_key == public_key:
                return str(key["id"])
        return None

    async def attach_floating_ip(self, server_id: str) -> str:
        logger.info("Creating floating IP for server: %s", server_id)
        data = await self._json(
            "POST",
            "/floating_ips",
            "attach_floating_ip",
            json={
                "type": "ipv4",
                "server": int(server_id) if server_id.isdigit() else server_id,
            },
        )
        address = (data.get("floating_ip") or {}).get("ip")
        if not address:
            raise ProviderError(
                provider=self.name,
                operation="attach_floating_ip",
                message="No floating IP in response",
            )
        return str(address)

    async def _type_region_matrix(
        self,
    ) -> tuple[dict[str, set[str]], dict[str, set[str]]]:
        """Return (regions by server type, server types by region)."""
        data = await self._json("GET", "/server_types", "list_server_types")
        by_type: dict[str, set[str]] = {}
        by_region: dict[str, set[str]] = {}
        for item in data.get("server_types") or []:
            type_name = item.get("name")
            if not type_name:
                continue
            regions = by_type.setdefault(type_name, set())
            for price in item.get("prices") or []:
                location = price.get("location")
                if isinstance(location, dict):
                    location = location.get("name")
                if isinstance(location, str) and location:
                    regions.add(location)
                    by_region.setdefault(location, set()).add(type_name)
        return by_type, by_region

    async def validate_create_request(
        self, request: CreateServerRequest
    ) -> CreateRequestValidation:
        by_type, by_region = await self._type_region_matrix()
        type_regions = sorted(by_type.get(request.server_type, set()))
        region_types = (
            sorted(by_region.get(request.region, set())) if request.region else []
        )

        if request.server_type not in by_type:
            candidates = sorted(by_region.get(request.region, set())) or sorted(by_type)
            return CreateRequestValidation(
                valid=False,
                reason=f"unsupported server_type '{request.server_type}'",
                valid_regions_for_type=type_regions,
                valid_server_types_for_region=region_types,
                suggested_region=DEFAULT_REGION,
                suggested_server_type=candidates[0] if candidates else None,
                permanent=True,
            )

        region = request.region or DEFAULT_REGION
        valid = region in by_type[request.server_type]
        return CreateRequestValidation(
            valid=valid,
            reason=None
            if valid
            else (
                f"server_type '{request.server_type}' is not available "
                f"in region '{region}'"
            ),
            valid_regions_for_type=type_regions,
            valid_server_types_for_region=region_types,
            suggested_region=None if valid else choose_preferred_region(type_regions),
            permanent=not valid,
        )

    async def resolve_create_request(
        self, request: CreateServerRequest, options: CapacityResolveOptions
    ) -> CreateServerRequest:
        resolved = request.model_copy()
        if not resolved.region:
            resolved.region = DEFAULT_REGION

        if resolved.region == "auto" or options.resolve_capacity:
            probe = resolved.model_copy(update={"region": DEFAULT_REGION})
            validation = await self.validate_create_request(probe)
            region = validation.suggested_region or choose_preferred_region(
                validation.valid_regions_for_type
            )
            if region:
                resolved.region = region
            elif resolved.region == "auto":
                resolved.region = DEFAULT_REGION

        validation = await self.validate_create_request(resolved)
        if validation.valid:
            return resolved

        if (options.resolve_capacity or options.auto_fallback) and (
            validation.suggested_region
        ):
            resolved.region = validation.suggested_region
        return resolved
