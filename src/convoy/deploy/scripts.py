"""Provisioning scripts and lifecycle hooks.

Scripts run on servers over ssh. Each (script, server) pair is tracked in
state under ``script@server`` so ``once`` and ``on-change`` scripts are
skipped when there is nothing to do.
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from jinja2 import Template

from convoy.config.defaults import SCRIPT_RETRY_DELAY
from convoy.lib.errors import ConfigError, ConvoyError, RetryError, ScriptError
from convoy.lib.retry import RetryDecision, retry_with_backoff_classified
from convoy.lib.shell import join_command, shell_quote
from convoy.models.config import (
    ConvoyConfig,
    HookPhase,
    IdempotencyMode,
    ScriptConfig,
    ServerConfig,
)
from convoy.models.state import LocalState, ScriptRunState
from convoy.runtime.transport import ShellRunner

logger = logging.getLogger(__name__)

TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection reset",
    "temporarily unavailable",
    "broken pipe",
    "network",
)

# Uploads the script through a quoted heredoc, runs it and removes it on exit.
REMOTE_SCRIPT_TEMPLATE = """\
tmp={{ remote_path }}
trap 'rm -f "$tmp"' EXIT
cat > "$tmp" <<'{{ marker }}'
{{ content }}
{{ marker }}
chmod +x "$tmp"
{{ run_command }}
"""

RunnerFactory = Callable[[ServerConfig], ShellRunner]


@dataclass
class PlannedAction:
    """Whether a script would run on a server, and why."""

    action: str
    reason: str

    @property
    def skip(self) -> bool:
        return self.action == "skip"


@dataclass
class ScriptPlanRow:
    script: str
    server: str
    action: str
    reason: str


@dataclass
class ScriptRunRecord:
    """Outcome of one script on one server."""

    script: str
    server: str
    ok: bool
    skipped: bool
    detail: str


@dataclass
class ScriptRunReport:
    """All per-server outcomes of one script run."""

    script: str
    records: list[ScriptRunRecord] = field(default_factory=list)

    @property
    def failed(self) -> list[ScriptRunRecord]:
        return [record for record in self.records if not record.ok]

    def raise_for_failures(self) -> None:
        """Raise ScriptError when any server failed."""
        failed = self.failed
        if not failed:
            return
        details = "; ".join(f"{r.server}: {r.detail}" for r in failed)
        raise ScriptError(
            self.script, f"one or more script executions failed ({details})"
        )


def script_state_key(script_name: str, server_name: str) -> str:
    return f"{script_name}@{server_name}"


def hash_script_content(content: str) -> str:
    """Return the sha256 hex digest of script content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def script_path(base_dir: Path, script: ScriptConfig) -> Path:
    """Resolve a script file relative to the configuration directory."""
    return base_dir / script.file


def load_script_content(base_dir: Path, name: str, script: ScriptConfig) -> str:
    """Read a script file.

    Raises:
        ScriptError: If the file cannot be read
    """
    path = script_path(base_dir, script)
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ScriptError(name, f"Failed to read script file '{path}': {exc}") from exc


def planned_action(
    script: ScriptConfig, content_hash: str, prior: ScriptRunState
) -> PlannedAction:
    """Decide whether a script should run given its last recorded run."""
    mode = script.idempotency
    if mode == IdempotencyMode.ONCE and prior.last_run_unix > 0:
        return PlannedAction("skip", "already ran once")
    if mode == IdempotencyMode.ON_CHANGE:
        if prior.last_hash == content_hash:
            return PlannedAction("skip", "script content unchanged")
        return PlannedAction("run", "content changed")
    return PlannedAction("run", f"idempotency={mode.value}")


def resolve_target_servers(
    config: ConvoyConfig,
    script: ScriptConfig,
    override_server: str | None = None,
    all_servers: bool = False,
) -> list[ServerConfig]:
    """Return the servers a script should run on.

    Raises:
        ConfigError: If no servers are declared, a named server is missing or
            the target is not ``all`` / ``server:<name>``
    """
    if not config.servers:
        raise ConfigError("infra.servers", "Script execution requires infra.servers")
    if all_servers:
        return list(config.servers)
    if override_server:
        server = config.get_server(override_server)
        if server is None:
            raise ConfigError("server", f"Server '{override_server}' not found")
        return [server]
    if script.target == "all":
        return list(config.servers)
    if script.target.startswith("server:"):
        name = script.target[len("server:") :]
        server = config.get_server(name)
        if server is None:
            raise ConfigError("target", f"Target server '{name}' not found")
        return [server]
    raise ConfigError(
        "target",
        f"Unsupported script target '{script.target}'. Use 'all' or 'server:<name>'",
    )


def is_transient_script_error(message: str) -> bool:
    """Return True for failures that look like network or timeout trouble."""
    lowered = message.lower()
    return any(marker in lowered for marker in TRANSIENT_MARKERS)


def build_script_invocation(
    name: str, script: ScriptConfig, content: str, now: int | None = None
) -> str:
    """Render the shell block that uploads, runs and removes a script."""
    timestamp = now if now is not None else int(time.time())
    remote_path = f"/tmp/convoy-{name}-{timestamp}.sh"
    marker = f"CONVOY_SCRIPT_{uuid.uuid4().hex}"

    argv = ["env", *(f"{k}={v}" for k, v in sorted(script.env.items()))]
    argv += [script.shell, remote_path, *script.args]
    exec_command = join_command(argv)
    if script.timeout_secs:
        run_command = (
            "if command -v timeout >/dev/null 2>&1; then "
            f"timeout {int(script.timeout_secs)} {exec_command}; "
            f"else {exec_command}; fi"
        )
    else:
        run_command = exec_command

    return Template(REMOTE_SCRIPT_TEMPLATE).render(
        remote_path=shell_quote(remote_path),
        marker=marker,
        content=content.rstrip("\n"),
        run_command=run_command,
    )


async def execute_script(
    runner: ShellRunner,
    name: str,
    server: ServerConfig,
    script: ScriptConfig,
    content: str,
) -> str:
    """Run a script once on a server.

    Raises:
        ScriptError: If the script exits non-zero or the transport fails
    """
    block = build_script_invocation(name, script, content)
    try:
        result = await runner.run(block)
    except (OSError, TimeoutError) as exc:
        raise ScriptError(name, f"transport failed: {exc}", server.name) from exc
    if not result.ok:
        raise ScriptError(
            name, f"remote script failed: {result.failure_detail()}", server.name
        )
    return "ok"


async def run_script(
    config: ConvoyConfig,
    state: LocalState,
    base_dir: Path,
    name: str,
    runner_for: RunnerFactory,
    override_server: str | None = None,
    all_servers: bool = False,
    dry_run: bool = False,
) -> ScriptRunReport:
    """Run a named script on its target servers.

    Successful runs are recorded in ``state``; a dry run records nothing.
    Every server is attempted; call ``raise_for_failures`` on the report after
    persisting state.

    Raises:
        ConfigError: If the script or a target server is unknown
        ScriptError: If the script file cannot be read
    """
    script = config.scripts.get(name)
    if script is None:
        raise ConfigError("scripts", f"Script '{name}' not found")

    servers = resolve_target_servers(config, script, override_server, all_servers)
    content = load_script_content(base_dir, name, script)
    content_hash = hash_script_content(content)
    report = ScriptRunReport(script=name)

    def classify(exc: Exception) -> RetryDecision:
        if script.retry.transient_only and not is_transient_script_error(str(exc)):
            return RetryDecision.STOP
        return RetryDecision.RETRY

    for server in servers:
        key = script_state_key(name, server.name)
        prior = state.script_runs.get(key) or ScriptRunState()
        plan = planned_action(script, content_hash, prior)

        if plan.skip:
            report.records.append(
                ScriptRunRecord(
                    name, server.name, ok=True, skipped=True, detail=plan.reason
                )
            )
            continue
        if dry_run:
            report.records.append(
                ScriptRunRecord(
                    name,
                    server.name,
                    ok=True,
                    skipped=False,
                    detail=f"dry-run; would execute {script.file}",
                )
            )
            continue

        try:
            runner = runner_for(server)
        except ConvoyError as exc:
            logger.error("Cannot reach server '%s': %s", server.name, exc)
            report.records.append(
                ScriptRunRecord(
                    name, server.name, ok=False, skipped=False, detail=str(exc)
                )
            )
            continue

        async def _attempt(_attempt: int, server: ServerConfig = server) -> str:
            return await execute_script(runner, name, server, script, content)

        try:
            detail = await retry_with_backoff_classified(
                script.retry.max_attempts,
                SCRIPT_RETRY_DELAY,
                f"Script '{name}' on '{server.name}'",
                classify,
                _attempt,
            )
        except RetryError as exc:
            logger.error("Script '%s' failed on '%s': %s", name, server.name, exc)
            report.records.append(
                ScriptRunRecord(
                    name,
                    server.name,
                    ok=False,
                    skipped=False,
                    detail=str(exc.last_error),
                )
            )
            continue

        state.script_runs[key] = ScriptRunState(
            last_hash=content_hash, last_run_unix=int(time.time())
        )
        logger.info("Script '%s' succeeded on '%s'", name, server.name)
        report.records.append(
            ScriptRunRecord(name, server.name, ok=True, skipped=False, detail=detail)
        )

    return report


async def run_hook_scripts(
    config: ConvoyConfig,
    state: LocalState,
    base_dir: Path,
    phase: HookPhase,
    runner_for: RunnerFactory,
    dry_run: bool = False,
) -> list[ScriptRunReport]:
    """Run the scripts of a hook phase in order, stopping at the first failure.

    Raises:
        ScriptError: If a script fails on any server
    """
    reports: list[ScriptRunReport] = []
    for name in config.hooks.for_phase(phase):
        logger.info("Running %s hook script '%s'", phase.value, name)
        report = await run_script(
            config, state, base_dir, name, runner_for, dry_run=dry_run
        )
        reports.append(report)
        report.raise_for_failures()
    return reports


def plan_scripts(
    config: ConvoyConfig,
    state: LocalState,
    base_dir: Path,
    name: str | None = None,
) -> list[ScriptPlanRow]:
    """Plan script execution without running anything.

    Raises:
        ConfigError: If ``name`` is not a declared script
        ScriptError: If a script file cannot be read
    """
    if name is not None and name not in config.scripts:
        raise ConfigError("scripts", f"Script '{name}' not found")

    rows: list[ScriptPlanRow] = []
    for script_name in sorted(config.scripts):
        if name is not None and script_name != name:
            continue
        script = config.scripts[script_name]
        servers = resolve_target_servers(config, script)
        content_hash = hash_script_content(
            load_script_content(base_dir, script_name, script)
        )
        for server in servers:
            prior = state.script_runs.get(
                script_state_key(script_name, server.name)
            ) or ScriptRunState()
            plan = planned_action(script, content_hash, prior)
            rows.append(
                ScriptPlanRow(script_name, server.name, plan.action, plan.reason)
            )
    return rows
