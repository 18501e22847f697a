"""Shell command construction helpers.

All user-supplied values that end up in a shell command line go through
``shell_quote`` / ``join_command``. Nothing else in the package builds shell
text by string interpolation of untrusted values.
"""

from __future__ import annotations

import shlex
from collections.abc import Iterable
from dataclasses import dataclass


@dataclass
class ShellResult:
    """Outcome of a shell invocation.

    Attributes:
        status: Process exit code
        stdout: Captured standard output
        stderr: Captured standard error
    """

    status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.status == 0

    def failure_detail(self) -> str:
        """Return the most useful description of a failed invocation."""
        stderr = self.stderr.strip()
        if stderr:
            return stderr
        stdout = self.stdout.strip()
        if stdout:
            return stdout
        return f"exit code {self.status}"


def shell_quote(value: str) -> str:
    """Quote a single argument for POSIX sh."""
    return shlex.quote(str(value))


def join_command(argv: Iterable[str]) -> str:
    """Join an argument vector into a safely quoted command line."""
    return " ".join(shell_quote(arg) for arg in argv)
