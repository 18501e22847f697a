"""Container runtimes that deploy, inspect and probe service containers.

Two backends are provided:

- ``ShellContainerRuntime`` composes ``docker`` CLI invocations and runs them
  through a ``ShellRunner`` (locally or over ssh). This is the default.
- ``DockerContainerRuntime`` talks to the local Docker daemon through the
  Docker SDK.

Backends are selected with ``create_runtime(kind, target, host)``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from convoy.config.defaults import (
    CONTAINER_REMOVE_POLL_ATTEMPTS,
    CONTAINER_REMOVE_POLL_INTERVAL,
)
from convoy.deploy.targets import LocalTarget, RemoteTarget, RuntimeTarget
from convoy.lib.errors import (
    DeployError,
    DeployVerificationFailedError,
    DockerNotAvailableError,
)
from convoy.lib.shell import ShellResult, join_command, shell_quote
from convoy.models.config import ServiceConfig
from convoy.runtime.transport import LocalShellRunner, ShellRunner, SshShellRunner

if TYPE_CHECKING:
    from docker.models.containers import Container

logger = logging.getLogger(__name__)

INSPECT_FORMAT = "{{.Id}}|{{.Config.Image}}|{{.State.Status}}"
RUNTIME_KINDS = ("shell", "docker")


def is_running_status(status: str) -> bool:
    """Return True when a container status string means the container runs."""
    lowered = status.lower()
    return lowered.startswith("up") or "running" in lowered or "started" in lowered


@dataclass
class DeployResult:
    """Observed state of a container right after deploy or on inspection.

    Attributes:
        container_id: Runtime container id
        image: Image reference the container was created from
        status: Raw runtime status text
        ports: Published port mappings as reported by the runtime
        running: Derived from ``status``
        detected_by: ``id`` when found by launched id, ``name`` otherwise
        healthy: Health gate verdict once evaluated
    """

    container_id: str
    status: str
    image: str = ""
    ports: list[str] = field(default_factory=list)
    running: bool = False
    detected_by: str = "id"
    healthy: bool | None = None

    @classmethod
    def from_inspect_line(cls, line: str, detected_by: str) -> DeployResult:
        """Parse ``id|image|status`` output of ``docker inspect``."""
        parts = line.split("|")
        container_id = parts[0] if parts else ""
        image = parts[1] if len(parts) > 1 else ""
        status = parts[2] if len(parts) > 2 else ""
        return cls(
            container_id=container_id,
            status=status,
            image=image,
            running=is_running_status(status),
            detected_by=detected_by,
        )


def build_run_command(name: str, service: ServiceConfig) -> list[str]:
    """Build the ``docker run`` argument vector for a service."""
    argv = ["docker", "run", "-d", "--name", name, "--restart", "unless-stopped"]
    for port in service.ports:
        argv += ["-p", f"{port}:{port}"]
    for key, value in sorted(service.env.items()):
        argv += ["-e", f"{key}={value}"]
    for volume in service.volumes:
        argv += ["-v", volume]
    argv.append(service.image)
    return argv


def build_replace_script(name: str, service: ServiceConfig) -> str:
    """Build the script that force-removes ``name`` and starts a new container.

    The old container is removed (not-found ignored) and polled until gone
    before ``docker run`` executes, so every deploy starts from a clean name.
    """
    quoted = shell_quote(name)
    tries = " ".join(str(i) for i in range(1, CONTAINER_REMOVE_POLL_ATTEMPTS + 1))
    return (
        f"docker rm -f {quoted} >/dev/null 2>&1 || true; "
        f"for i in {tries}; do "
        f"docker container inspect {quoted} >/dev/null 2>&1 || break; "
        f"docker rm -f {quoted} >/dev/null 2>&1 || true; "
        f"sleep {CONTAINER_REMOVE_POLL_INTERVAL}; "
        f"done; "
        f"{join_command(build_run_command(name, service))}"
    )


def image_preflight_error(image: str, detail: str) -> DeployError:
    hint = ""
    if image.startswith("ghcr.io/"):
        hint = (
            " Hint: ensure the host has GHCR credentials (`docker login ghcr.io`) "
            "with read:packages scope."
        )
    return DeployError(
        operation="image_preflight",
        message=f"Image preflight failed for '{image}': {detail}.{hint}",
    )


class ContainerRuntime(ABC):
    """Capability interface for a container runtime on one target."""

    kind: str = ""

    @abstractmethod
    async def deploy(self, name: str, service: ServiceConfig) -> DeployResult:
        """Replace any container called ``name`` with one running ``service``.

        Raises:
            DeployError: If the image is unavailable or the container fails to start
            DeployVerificationFailedError: If the container is not found afterwards
        """

    @abstractmethod
    async def inspect(
        self, name: str, launched_id: str | None = None
    ) -> DeployResult | None:
        """Return the container's observed state, or None when it does not exist."""

    @abstractmethod
    async def current_image(self, name: str) -> str | None:
        """Return the image of the existing container ``name``, if any."""

    @abstractmethod
    async def exec(self, name: str, command: list[str]) -> ShellResult:
        """Run ``command`` inside the container."""

    @abstractmethod
    async def run_host(self, script: str) -> ShellResult:
        """Run a shell script on the host the container runs on."""

    @abstractmethod
    async def logs(self, name: str, tail: int = 100) -> list[str]:
        """Return the last ``tail`` log lines of the container."""

    @abstractmethod
    async def remove(self, name: str) -> None:
        """Force-remove the container; a missing container is not an error."""

    def describe(self) -> str:
        return self.kind


class ShellContainerRuntime(ContainerRuntime):
    """Drive the ``docker`` CLI through a shell runner."""

    kind = "shell"

    def __init__(self, runner: ShellRunner) -> None:
        self.runner = runner

    def describe(self) -> str:
        return f"shell({self.runner.describe()})"

    async def _run(self, operation: str, script: str) -> ShellResult:
        try:
            return await self.runner.run(script)
        except (OSError, TimeoutError) as exc:
            raise DeployError(
                operation=operation,
                message=f"shell on {self.runner.describe()} failed: {exc}",
            ) from exc

    async def preflight_image(self, image: str) -> None:
        """Ensure the image is present on the host, pulling it if needed."""
        quoted = shell_quote(image)
        result = await self._run(
            "image_preflight",
            f"docker image inspect {quoted} >/dev/null 2>&1 || docker pull {quoted}",
        )
        if not result.ok:
            raise image_preflight_error(image, result.failure_detail())

    async def deploy(self, name: str, service: ServiceConfig) -> DeployResult:
        await self.preflight_image(service.image)

        result = await self._run("deploy", build_replace_script(name, service))
        if not result.ok:
            raise DeployError(
                operation="deploy",
                message=f"Failed to deploy service '{name}': {result.failure_detail()}",
                resource=name,
            )

        output_lines = result.stdout.strip().splitlines()
        launched_id = output_lines[-1] if output_lines else None
        observed = await self.inspect(name, launched_id)
        if observed is None:
            raise DeployVerificationFailedError(name)
        return observed

    async def _inspect_line(self, ref: str) -> str:
        result = await self._run(
            "inspect",
            f"docker inspect -f {shell_quote(INSPECT_FORMAT)} {shell_quote(ref)} "
            "2>/dev/null || true",
        )
        return result.stdout.strip()

    async def inspect(
        self, name: str, launched_id: str | None = None
    ) -> DeployResult | None:
        detected_by = "id"
        line = ""
        if launched_id and launched_id.strip():
            line = await self._inspect_line(launched_id.strip())
        if not line:
            line = await self._inspect_line(name)
            detected_by = "name" if launched_id else "id"
        if not line:
            return None

        observed = DeployResult.from_inspect_line(line.splitlines()[0], detected_by)
        ports = await self._run(
            "inspect",
            f"docker ps -a --filter {shell_quote(f'name=^/{name}$')} "
            f"--format {shell_quote('{{.Ports}}')} | head -n 1",
        )
        if ports.ok and ports.stdout.strip():
            observed.ports = [
                part.strip() for part in ports.stdout.strip().split(",") if part.strip()
            ]
        return observed

    async def current_image(self, name: str) -> str | None:
        result = await self._run(
            "inspect",
            f"docker inspect -f {shell_quote('{{.Config.Image}}')} "
            f"{shell_quote(name)} 2>/dev/null || true",
        )
        image = result.stdout.strip() if result.ok else ""
        return image or None

    async def exec(self, name: str, command: list[str]) -> ShellResult:
        return await self._run(
            "exec", join_command(["docker", "exec", name, *command])
        )

    async def run_host(self, script: str) -> ShellResult:
        return await self._run("probe", script)

    async def logs(self, name: str, tail: int = 100) -> list[str]:
        result = await self._run(
            "logs", f"docker logs --tail {int(tail)} {shell_quote(name)} 2>&1"
        )
        if not result.ok:
            raise DeployError(
                operation="logs",
                message=f"Failed to read logs for '{name}': {result.failure_detail()}",
                resource=name,
            )
        return result.stdout.splitlines()

    async def remove(self, name: str) -> None:
        result = await self._run(
            "remove", f"docker rm -f {shell_quote(name)} >/dev/null 2>&1 || true"
        )
        if not result.ok:
            raise DeployError(
                operation="remove",
                message=f"Failed to remove '{name}': {result.failure_detail()}",
                resource=name,
            )


def _format_ports(attrs: dict[str, Any]) -> list[str]:
    ports = (attrs.get("NetworkSettings") or {}).get("Ports") or {}
    formatted: list[str] = []
    for container_port, bindings in sorted(ports.items()):
        if not bindings:
            formatted.append(container_port)
            continue
        for binding in bindings:
            formatted.append(
                f"{binding.get('HostIp', '')}:{binding.get('HostPort', '')}"
                f"->{container_port}"
            )
    return formatted


class DockerContainerRuntime(ContainerRuntime):
    """Drive the local Docker daemon through the Docker SDK.

    SDK calls are blocking and run in a worker thread.
    """

    kind = "docker"

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        """Connect to the Docker daemon.

        Raises:
            DockerNotAvailableError: If the daemon is not reachable
        """
        if client is not None:
            self.client = client
            return
        try:
            self.client = docker.from_env()  # type: ignore[attr-defined]
        except DockerException as e:
            raise DockerNotAvailableError(operation="connect") from e

    def _get(self, name: str) -> Container | None:
        try:
            return self.client.containers.get(name)
        except NotFound:
            return None

    def _ensure_image(self, image: str) -> None:
        try:
            self.client.images.get(image)
        except ImageNotFound:
            logger.info("Pulling image %s", image)
            try:
                self.client.images.pull(image)
            except DockerException as exc:
                raise image_preflight_error(image, str(exc)) from exc

    def _remove_sync(self, name: str) -> None:
        for _ in range(CONTAINER_REMOVE_POLL_ATTEMPTS):
            container = self._get(name)
            if container is None:
                return
            try:
                container.remove(force=True)
            except NotFound:
                return
            except APIError as exc:
                # Removal already in progress; poll until the name is free.
                logger.debug("Waiting for removal of %s: %s", name, exc)
            time.sleep(CONTAINER_REMOVE_POLL_INTERVAL)

    def _deploy_sync(self, name: str, service: ServiceConfig) -> DeployResult:
        self._ensure_image(service.image)
        self._remove_sync(name)
        try:
            container = self.client.containers.run(
                service.image,
                name=name,
                detach=True,
                restart_policy={"Name": "unless-stopped"},
                ports={f"{port}/tcp": port for port in service.ports},
                environment=dict(sorted(service.env.items())),
                volumes=list(service.volumes),
            )
        except DockerException as exc:
            raise DeployError(
                operation="deploy",
                message=f"Failed to deploy service '{name}': {exc}",
                resource=name,
            ) from exc

        observed = self._inspect_sync(name, container.id)
        if observed is None:
            raise DeployVerificationFailedError(name)
        return observed

    def _inspect_sync(self, name: str, launched_id: str | None) -> DeployResult | None:
        detected_by = "id"
        container = self._get(launched_id) if launched_id else None
        if container is None:
            container = self._get(name)
            detected_by = "name" if launched_id else "id"
        if container is None:
            return None
        container.reload()
        attrs = container.attrs
        status = (attrs.get("State") or {}).get("Status", container.status or "")
        return DeployResult(
            container_id=container.id or "",
            status=status,
            image=(attrs.get("Config") or {}).get("Image", ""),
            ports=_format_ports(attrs),
            running=is_running_status(status),
            detected_by=detected_by,
        )

    async def deploy(self, name: str, service: ServiceConfig) -> DeployResult:
        try:
            return await asyncio.to_thread(self._deploy_sync, name, service)
        except DockerException as exc:
            raise DeployError(
                operation="deploy", message=str(exc), resource=name
            ) from exc

    async def inspect(
        self, name: str, launched_id: str | None = None
    ) -> DeployResult | None:
        try:
            return await asyncio.to_thread(self._inspect_sync, name, launched_id)
        except DockerException as exc:
            raise DeployError(
                operation="inspect", message=str(exc), resource=name
            ) from exc

    async def current_image(self, name: str) -> str | None:
        observed = await self.inspect(name)
        if observed is None or not observed.image:
            return None
        return observed.image

    async def exec(self, name: str, command: list[str]) -> ShellResult:
        def _exec() -> ShellResult:
            container = self._get(name)
            if container is None:
                return ShellResult(status=1, stderr=f"No such container: {name}")
            exit_code, output = container.exec_run(command, demux=True)
            stdout, stderr = output if output else (None, None)
            return ShellResult(
                status=exit_code if exit_code is not None else 1,
                stdout=(stdout or b"").decode("utf-8", errors="replace"),
                stderr=(stderr or b"").decode("utf-8", errors="replace"),
            )

        try:
            return await asyncio.to_thread(_exec)
        except DockerException as exc:
            raise DeployError(
                operation="exec", message=str(exc), resource=name
            ) from exc

    async def run_host(self, script: str) -> ShellResult:
        try:
            return await LocalShellRunner().run(script)
        except (OSError, TimeoutError) as exc:
            raise DeployError(operation="probe", message=str(exc)) from exc

    async def logs(self, name: str, tail: int = 100) -> list[str]:
        def _logs() -> list[str]:
            container = self._get(name)
            if container is None:
                raise DeployError(
                    operation="logs",
                    message=f"No such container: {name}",
                    resource=name,
                )
            raw = container.logs(tail=tail)
            return raw.decode("utf-8", errors="replace").splitlines()

        try:
            return await asyncio.to_thread(_logs)
        except DockerException as exc:
            raise DeployError(
                operation="logs", message=str(exc), resource=name
            ) from exc

    async def remove(self, name: str) -> None:
        try:
            await asyncio.to_thread(self._remove_sync, name)
        except DockerException as exc:
            raise DeployError(
                operation="remove", message=str(exc), resource=name
            ) from exc


def create_runtime(
    kind: str, target: RuntimeTarget, host: str | None = None
) -> ContainerRuntime:
    """Create a container runtime for a target.

    Args:
        kind: ``shell`` or ``docker``
        target: Where the runtime lives
        host: Address of the remote server (required for remote targets)

    Raises:
        DeployError: If the combination is unsupported or the host is unknown
    """
    if kind not in RUNTIME_KINDS:
        raise DeployError(
            operation="runtime",
            message=(
                f"Unknown runtime '{kind}'. "
                f"Expected one of: {', '.join(RUNTIME_KINDS)}"
            ),
        )

    if isinstance(target, LocalTarget):
        if kind == "docker":
            return DockerContainerRuntime()
        return ShellContainerRuntime(LocalShellRunner())

    if isinstance(target, RemoteTarget):
        if kind == "docker":
            raise DeployError(
                operation="runtime",
                message="The docker runtime only supports local targets",
                resource=target.server.name,
            )
        if not host:
            raise DeployError(
                operation="runtime",
                message=(
                    f"No address known for server '{target.server.name}'. "
                    "Run `convoy up` or `convoy status` first."
                ),
                resource=target.server.name,
            )
        return ShellContainerRuntime(SshShellRunner(host, target.server.ssh_key))

    raise DeployError(operation="runtime", message=f"Unknown target: {target!r}")
