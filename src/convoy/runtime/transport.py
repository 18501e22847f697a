"""Shell transports: run a POSIX shell script locally or over ssh."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from convoy.config.defaults import REMOTE_USER
from convoy.lib.shell import ShellResult, shell_quote

logger = logging.getLogger(__name__)

SSH_OPTIONS = (
    "-o",
    "BatchMode=yes",
    "-o",
    "ConnectTimeout=10",
    "-o",
    "StrictHostKeyChecking=accept-new",
)


class ShellRunner(ABC):
    """Executes shell scripts on some host and captures the result."""

    @abstractmethod
    async def run(self, script: str, timeout: float | None = None) -> ShellResult:
        """Run ``script`` with ``sh -lc`` and return its result.

        A non-zero exit status is returned, not raised.

        Raises:
            OSError: If the process could not be started
            TimeoutError: If ``timeout`` elapsed before the process exited
        """

    @abstractmethod
    def describe(self) -> str:
        """Short label for log lines (e.g. ``local`` or ``root@1.2.3.4``)."""


async def _run_process(argv: list[str], timeout: float | None) -> ShellResult:
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise TimeoutError(f"command timed out after {timeout}s") from None
    return ShellResult(
        status=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


class LocalShellRunner(ShellRunner):
    """Run scripts on this machine."""

    async def run(self, script: str, timeout: float | None = None) -> ShellResult:
        logger.debug("local$ %s", script)
        return await _run_process(["sh", "-lc", script], timeout)

    def describe(self) -> str:
        return "local"


def resolve_identity_path(ssh_key: str | None) -> Path | None:
    """Return the private key file for an ssh key reference, if one exists.

    Only ``~`` and absolute references are treated as paths. A ``.pub``
    reference resolves to the matching private key when that file exists.
    """
    if not ssh_key or not (ssh_key.startswith("~") or ssh_key.startswith("/")):
        return None
    path = Path(ssh_key).expanduser()
    if path.suffix == ".pub":
        private = path.with_suffix("")
        if private.exists():
            return private
    return path if path.exists() else None


class SshShellRunner(ShellRunner):
    """Run scripts on a remote host through the ``ssh`` client."""

    def __init__(
        self, host: str, ssh_key: str | None = None, user: str = REMOTE_USER
    ) -> None:
        self.host = host
        self.user = user
        self.identity = resolve_identity_path(ssh_key)

    def command(self, script: str) -> list[str]:
        """Build the ssh argument vector for ``script``."""
        argv = ["ssh", *SSH_OPTIONS]
        if self.identity is not None:
            argv += ["-i", str(self.identity)]
        # ssh joins remote arguments with spaces, so the script is quoted once.
        argv += [f"{self.user}@{self.host}", "sh", "-lc", shell_quote(script)]
        return argv

    async def run(self, script: str, timeout: float | None = None) -> ShellResult:
        logger.debug("%s$ %s", self.describe(), script)
        return await _run_process(self.command(script), timeout)

    def describe(self) -> str:
        return f"{self.user}@{self.host}"
