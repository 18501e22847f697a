"""Tests for the Hetzner Cloud provider using an httpx mock transport."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from convoy.lib.errors import ProviderError
from convoy.models.provider import (
    CapacityResolveOptions,
    CreateServerRequest,
    ServerStatus,
)
from convoy.providers.hetzner import (
    HETZNER_TOKEN_ENV_VARS,
    HetznerProvider,
    choose_preferred_region,
    convert_server,
)

SERVER_TYPES = {
    "server_types": [
        {"name": "cx22", "prices": [{"location": "nbg1"}, {"location": "hel1"}]},
        {"name": "cpx11", "prices": [{"location": {"name": "ash"}}]},
    ]
}


def _server_payload(
    server_id: int = 42, name: str = "app-1", status: str = "running"
) -> dict[str, Any]:
    return {
        "id": server_id,
        "name": name,
        "status": status,
        "public_net": {"ipv4": {"ip": "203.0.113.7"}},
        "private_net": [{"ip": "10.0.0.2"}],
        "server_type": {"name": "cx22"},
        "datacenter": {"location": {"name": "nbg1"}},
    }


class Recorder:
    """Routes requests to canned responses and records them."""

    def __init__(
        self, routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]]
    ) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"error": {"code": "not_found"}})
        return handler(request)

    def bodies(self, method: str, path: str) -> list[dict[str, Any]]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.method == method and r.url.path == path
        ]


def _provider(recorder: Recorder) -> HetznerProvider:
    return HetznerProvider(
        {"api_token": "test-token", "base_url": "https://hetzner.test"},
        transport=httpx.MockTransport(recorder),
    )


def _ok(payload: dict[str, Any], status: int = 200):
    return lambda _request: httpx.Response(status, json=payload)


class TestConfiguration:
    """Tests for token handling."""

    def test_missing_token(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Without options or env vars the client refuses to start."""
        for env_var in HETZNER_TOKEN_ENV_VARS:
            monkeypatch.delenv(env_var, raising=False)

        with pytest.raises(ProviderError, match="token not found") as exc_info:
            HetznerProvider()

        assert exc_info.value.operation == "configure"

    @pytest.mark.asyncio
    async def test_token_from_environment(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """The token is read from the environment when options omit it."""
        for env_var in HETZNER_TOKEN_ENV_VARS:
            monkeypatch.delenv(env_var, raising=False)
        monkeypatch.setenv("HETZNER_TOKEN", "env-token")
        recorder = Recorder({("GET", "/servers"): _ok({"servers": []})})

        provider = HetznerProvider(
            {"base_url": "https://hetzner.test"},
            transport=httpx.MockTransport(recorder),
        )
        await provider.list_servers()
        await provider.aclose()

        assert recorder.requests[0].headers["Authorization"] == "Bearer env-token"

    @pytest.mark.asyncio
    async def test_empty_token_variable_is_skipped(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """An empty variable falls through to the next token variable."""
        for env_var in HETZNER_TOKEN_ENV_VARS:
            monkeypatch.delenv(env_var, raising=False)
        monkeypatch.setenv("HETZNER_API_KEY", "")
        monkeypatch.setenv("HETZNER_API_TOKEN", "second-token")
        recorder = Recorder({("GET", "/servers"): _ok({"servers": []})})

        provider = HetznerProvider(
            {"base_url": "https://hetzner.test"},
            transport=httpx.MockTransport(recorder),
        )
        await provider.list_servers()
        await provider.aclose()

        assert recorder.requests[0].headers["Authorization"] == "Bearer second-token"


class TestServers:
    """Tests for server lifecycle calls."""

    def test_convert_server(self) -> None:
        """Test conversion of an API server payload to a Server."""
        server = convert_server(_server_payload(status="initializing"))

        assert server.id == "42"
        assert server.status is ServerStatus.CREATING
        assert server.public_ip == "203.0.113.7"
        assert server.private_ip == "10.0.0.2"
        assert server.region == "nbg1"

    def test_unknown_status_is_error(self) -> None:
        """Test that unmapped server statuses become ERROR."""
        assert convert_server(_server_payload(status="migrating")).status is (
            ServerStatus.ERROR
        )

    @pytest.mark.asyncio
    async def test_list_servers(self) -> None:
        """Test that list_servers converts each server in the response."""
        recorder = Recorder(
            {("GET", "/servers"): _ok({"servers": [_server_payload()]})}
        )
        provider = _provider(recorder)

        servers = await provider.list_servers()

        assert [s.name for s in servers] == ["app-1"]
        assert servers[0].status is ServerStatus.RUNNING

    @pytest.mark.asyncio
    async def test_create_server_uploads_key_file(self, ssh_key: Path) -> None:
        """A key path is uploaded first and its id used in the create call."""
        recorder = Recorder(
            {
                ("POST", "/ssh_keys"): _ok({"ssh_key": {"id": 7}}, 201),
                ("POST", "/servers"): _ok({"server": _server_payload()}, 201),
            }
        )
        provider = _provider(recorder)

        server = await provider.create_server(
            CreateServerRequest(
                name="app-1", server_type="cx22", region="nbg1", ssh_key=str(ssh_key)
            )
        )

        assert server.id == "42"
        [key_body] = recorder.bodies("POST", "/ssh_keys")
        assert key_body == {"name": "app-1-key", "public_key": "ssh-ed25519 AAAA test"}
        [server_body] = recorder.bodies("POST", "/servers")
        assert server_body["ssh_keys"] == ["7"]
        assert server_body["location"] == "nbg1"
        assert server_body["image"] == "ubuntu-24.04"

    @pytest.mark.asyncio
    async def test_create_server_with_key_name(self) -> None:
        """Test that a key name is passed through without an upload."""
        recorder = Recorder(
            {("POST", "/servers"): _ok({"server": _server_payload()}, 201)}
        )
        provider = _provider(recorder)

        await provider.create_server(
            CreateServerRequest(name="app-1", server_type="cx22", ssh_key="deploy")
        )

        [server_body] = recorder.bodies("POST", "/servers")
        assert server_body["ssh_keys"] == ["deploy"]
        assert server_body["location"] == "ash"

    @pytest.mark.asyncio
    async def test_existing_key_is_reused(self, ssh_key: Path) -> None:
        """Test that an already uploaded key is looked up and reused."""
        recorder = Recorder(
            {
                ("POST", "/ssh_keys"): _ok(
                    {"error": {"code": "uniqueness_error"}}, 409
                ),
                ("GET", "/ssh_keys"): _ok(
                    {
                        "ssh_keys": [
                            {"id": 3, "name": "other", "public_key": "x"},
                            {
                                "id": 9,
                                "name": "someone",
                                "public_key": "ssh-ed25519 AAAA test",
                            },
                        ]
                    }
                ),
            }
        )
        provider = _provider(recorder)

        assert await provider.upload_ssh_key("app-1-key", str(ssh_key)) == "9"

    @pytest.mark.asyncio
    async def test_create_with_floating_ip(self) -> None:
        """Test that a floating IP is created and becomes the public address."""
        recorder = Recorder(
            {
                ("POST", "/servers"): _ok({"server": _server_payload()}, 201),
                ("POST", "/floating_ips"): _ok(
                    {"floating_ip": {"ip": "198.51.100.1"}}, 201
                ),
            }
        )
        provider = _provider(recorder)

        server = await provider.create_server(
            CreateServerRequest(
                name="app-1",
                server_type="cx22",
                ssh_key="deploy",
                attach_floating_ip=True,
            )
        )

        assert server.public_ip == "198.51.100.1"
        assert recorder.bodies("POST", "/floating_ips") == [
            {"type": "ipv4", "server": 42}
        ]

    @pytest.mark.asyncio
    async def test_error_response_raises(self) -> None:
        """Test that error responses raise ProviderError with the status."""
        recorder = Recorder({})
        provider = _provider(recorder)

        with pytest.raises(ProviderError) as exc_info:
            await provider.destroy_server("404")

        assert exc_info.value.status_code == 404
        assert exc_info.value.operation == "destroy_server"

    @pytest.mark.asyncio
    async def test_transport_error_raises(self) -> None:
        """Test that connection failures raise ProviderError."""
        def boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        provider = HetznerProvider(
            {"api_token": "t", "base_url": "https://hetzner.test"},
            transport=httpx.MockTransport(boom),
        )

        with pytest.raises(ProviderError, match="request to /servers failed"):
            await provider.list_servers()


class TestCapacity:
    """Tests for create request validation and resolution."""

    def test_choose_preferred_region(self) -> None:
        """Test region preference order and its fallbacks."""
        assert choose_preferred_region(["fsn1", "hel1"]) == "hel1"
        assert choose_preferred_region(["sin"]) == "sin"
        assert choose_preferred_region([]) is None

    @pytest.mark.asyncio
    async def test_valid_request(self) -> None:
        """Test that an available type and region validate."""
        provider = _provider(Recorder({("GET", "/server_types"): _ok(SERVER_TYPES)}))

        validation = await provider.validate_create_request(
            CreateServerRequest(
                name="a", server_type="cx22", region="nbg1", ssh_key="k"
            )
        )

        assert validation.valid
        assert validation.valid_regions_for_type == ["hel1", "nbg1"]

    @pytest.mark.asyncio
    async def test_type_unavailable_in_region(self) -> None:
        """Test that an unavailable region suggests valid ones."""
        provider = _provider(Recorder({("GET", "/server_types"): _ok(SERVER_TYPES)}))

        validation = await provider.validate_create_request(
            CreateServerRequest(name="a", server_type="cx22", region="ash", ssh_key="k")
        )

        assert not validation.valid
        assert validation.permanent
        assert validation.suggested_region == "hel1"
        assert validation.valid_server_types_for_region == ["cpx11"]
        assert "not available in region 'ash'" in (validation.reason or "")

    @pytest.mark.asyncio
    async def test_unknown_server_type(self) -> None:
        """Test that an unknown server type is rejected with suggestions."""
        provider = _provider(Recorder({("GET", "/server_types"): _ok(SERVER_TYPES)}))

        validation = await provider.validate_create_request(
            CreateServerRequest(
                name="a", server_type="cx99", region="nbg1", ssh_key="k"
            )
        )

        assert not validation.valid
        assert validation.reason == "unsupported server_type 'cx99'"
        assert validation.suggested_server_type == "cx22"

    @pytest.mark.asyncio
    async def test_resolve_with_fallback(self) -> None:
        """Test that auto_fallback moves the request to a valid region."""
        provider = _provider(Recorder({("GET", "/server_types"): _ok(SERVER_TYPES)}))
        request = CreateServerRequest(
            name="a", server_type="cx22", region="fsn1", ssh_key="k"
        )

        unchanged = await provider.resolve_create_request(
            request, CapacityResolveOptions()
        )
        resolved = await provider.resolve_create_request(
            request, CapacityResolveOptions(auto_fallback=True)
        )

        assert unchanged.region == "fsn1"
        assert resolved.region == "hel1"
        assert request.region == "fsn1"

    @pytest.mark.asyncio
    async def test_resolve_auto_region(self) -> None:
        """Test that region auto resolves to a preferred region."""
        provider = _provider(Recorder({("GET", "/server_types"): _ok(SERVER_TYPES)}))

        resolved = await provider.resolve_create_request(
            CreateServerRequest(
                name="a", server_type="cx22", region="auto", ssh_key="k"
            ),
            CapacityResolveOptions(),
        )

        assert resolved.region == "hel1"
