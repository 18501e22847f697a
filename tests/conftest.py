"""Pytest configuration and shared fixtures for Convoy tests."""

from __future__ import annotations

import os
import textwrap
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from convoy.lib.errors import DeployError, ProviderError
from convoy.lib.shell import ShellResult
from convoy.models.config import ServiceConfig
from convoy.models.provider import (
    CreateRequestValidation,
    CreateServerRequest,
    ProviderCapabilities,
    Server,
    ServerStatus,
)
from convoy.providers.base import MetalProvider
from convoy.runtime.containers import ContainerRuntime, DeployResult
from convoy.runtime.transport import ShellRunner


class FakeShellRunner(ShellRunner):
    """Shell runner that records scripts and answers from a responder.

    The responder receives the script text and returns a ShellResult or
    raises. Without one every script succeeds with empty output.
    """

    def __init__(
        self,
        responder: Callable[[str], ShellResult] | None = None,
        label: str = "fake",
    ) -> None:
        self.responder = responder
        self.label = label
        self.scripts: list[str] = []

    async def run(self, script: str, timeout: float | None = None) -> ShellResult:
        self.scripts.append(script)
        if self.responder is None:
            return ShellResult(0)
        return self.responder(script)

    def describe(self) -> str:
        return self.label


class FakeRuntime(ContainerRuntime):
    """In-memory container runtime.

    ``healthy_images`` decides which images pass probes; ``failing`` holds
    service names whose deploys raise.
    """

    kind = "fake"

    def __init__(
        self,
        images: dict[str, str] | None = None,
        healthy_images: set[str] | None = None,
        failing: set[str] | None = None,
    ) -> None:
        self.images: dict[str, str] = dict(images or {})
        self.healthy_images = healthy_images
        self.failing = set(failing or ())
        self.deploys: list[tuple[str, str]] = []
        self.removed: list[str] = []
        self.probes: list[str] = []

    def _healthy(self, name: str) -> bool:
        image = self.images.get(name)
        if image is None:
            return False
        return self.healthy_images is None or image in self.healthy_images

    async def deploy(self, name: str, service: ServiceConfig) -> DeployResult:
        self.deploys.append((name, service.image))
        if name in self.failing:
            raise DeployError("deploy", f"cannot start {name}", resource=name)
        self.images[name] = service.image
        return DeployResult(
            container_id=f"id-{name}",
            status="running",
            image=service.image,
            running=True,
        )

    async def inspect(
        self, name: str, launched_id: str | None = None
    ) -> DeployResult | None:
        if name not in self.images:
            return None
        return DeployResult(
            container_id=f"id-{name}",
            status="running",
            image=self.images[name],
            running=True,
        )

    async def current_image(self, name: str) -> str | None:
        return self.images.get(name)

    async def exec(self, name: str, command: list[str]) -> ShellResult:
        self.probes.append(" ".join(command))
        if self._healthy(name):
            return ShellResult(0, "ok")
        return ShellResult(1, "", "probe failed")

    async def run_host(self, script: str) -> ShellResult:
        self.probes.append(script)
        if any(self._healthy(name) for name in self.images):
            return ShellResult(0)
        return ShellResult(1, "", "connection refused")

    async def logs(self, name: str, tail: int = 100) -> list[str]:
        return []

    async def remove(self, name: str) -> None:
        self.removed.append(name)
        self.images.pop(name, None)


class FakeProvider(MetalProvider):
    """Compute provider backed by a dict of servers."""

    name = "hetzner"

    def __init__(
        self,
        servers: list[Server] | None = None,
        validation: CreateRequestValidation | None = None,
        create_errors: list[Exception] | None = None,
    ) -> None:
        self.servers: dict[str, Server] = {s.name: s for s in servers or []}
        self.validation = validation or CreateRequestValidation(valid=True)
        self.create_errors = list(create_errors or [])
        self.created: list[CreateServerRequest] = []
        self.destroyed: list[str] = []
        self.closed = False

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(supports_direct_ssh=True)

    async def create_server(self, request: CreateServerRequest) -> Server:
        self.created.append(request)
        if self.create_errors:
            raise self.create_errors.pop(0)
        server = Server(
            id=str(100 + len(self.servers)),
            name=request.name,
            status=ServerStatus.RUNNING,
            public_ip=f"10.0.0.{len(self.servers) + 1}",
        )
        self.servers[server.name] = server
        return server

    async def destroy_server(self, server_id: str) -> None:
        for name, server in list(self.servers.items()):
            if server.id == server_id:
                del self.servers[name]
                self.destroyed.append(server_id)
                return
        raise ProviderError(self.name, "destroy_server", "not found", 404)

    async def get_server(self, server_id: str) -> Server:
        for server in self.servers.values():
            if server.id == server_id:
                return server
        raise ProviderError(self.name, "get_server", "not found", 404)

    async def list_servers(self) -> list[Server]:
        return list(self.servers.values())

    async def upload_ssh_key(self, name: str, public_key_path: str) -> str:
        return "key-1"

    async def attach_floating_ip(self, server_id: str) -> str:
        return "192.0.2.10"

    async def validate_create_request(
        self, request: CreateServerRequest
    ) -> CreateRequestValidation:
        return self.validation

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_runner_cls() -> type[FakeShellRunner]:
    return FakeShellRunner


@pytest.fixture
def fake_runtime_cls() -> type[FakeRuntime]:
    return FakeRuntime


@pytest.fixture
def fake_provider_cls() -> type[FakeProvider]:
    return FakeProvider


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[..., Path]:
    """Write a convoy.yaml (and optional extra files) into tmp_path.

    Returns:
        Callable taking YAML text and ``files`` mapping relative paths to
        contents, returning the config path.
    """

    def _write(
        content: str,
        files: dict[str, str] | None = None,
        name: str = "convoy.yaml",
    ) -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(content), encoding="utf-8")
        for relative, body in (files or {}).items():
            target = tmp_path / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(body, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def ssh_key(tmp_path: Path) -> Path:
    """A public/private key pair on disk."""
    private = tmp_path / "keys" / "id_ed25519"
    private.parent.mkdir(parents=True, exist_ok=True)
    private.write_text("PRIVATE", encoding="utf-8")
    public = private.with_suffix(".pub")
    public.write_text("ssh-ed25519 AAAA test", encoding="utf-8")
    return public


@pytest.fixture
def isolated_env() -> Generator[dict[str, str], None, None]:
    """Provide isolated environment variables for testing.

    Saves current environment and restores after test.
    """
    original_env = os.environ.copy()
    yield original_env
    os.environ.clear()
    os.environ.update(original_env)


def server(name: str, ip: str | None = "10.0.0.1", **kwargs: Any) -> Server:
    return Server(
        id=kwargs.pop("id", f"id-{name}"),
        name=name,
        status=kwargs.pop("status", ServerStatus.RUNNING),
        public_ip=ip,
        **kwargs,
    )


@pytest.fixture
def make_server() -> Callable[..., Server]:
    return server
