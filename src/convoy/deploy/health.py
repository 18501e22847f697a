"""Service health probes and gate evaluation.

Probes run on the service's target: ``command`` inside the container,
``http`` and ``tcp`` from the host the container runs on. ``any`` and
``all`` combine nested probes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from convoy.config.defaults import HEALTHCHECK_DEFAULTS
from convoy.lib.errors import ConfigError, HealthGateError
from convoy.lib.shell import ShellResult, join_command, shell_quote
from convoy.models.config import (
    HealthcheckConfig,
    HttpHealthcheckConfig,
    ServiceConfig,
    TcpHealthcheckConfig,
)
from convoy.runtime.containers import ContainerRuntime

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 300


def _limit(value: str) -> str:
    value = value.strip()
    if len(value) <= MAX_OUTPUT_CHARS:
        return value
    return value[:MAX_OUTPUT_CHARS] + "..."


@dataclass
class HealthProbeRecord:
    """One executed probe attempt."""

    profile: str
    command: str
    ok: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @classmethod
    def from_result(
        cls, profile: str, command: str, result: ShellResult
    ) -> HealthProbeRecord:
        return cls(
            profile=profile,
            command=command,
            ok=result.ok,
            exit_code=result.status,
            stdout=_limit(result.stdout),
            stderr=_limit(result.stderr),
        )

    def summary(self) -> str:
        parts = [f"{self.profile}: exit={self.exit_code}"]
        if self.stderr:
            parts.append(f"stderr={self.stderr}")
        if self.stdout:
            parts.append(f"stdout={self.stdout}")
        return " ".join(parts)


@dataclass
class HealthEvaluation:
    """Outcome of a service health gate."""

    ok: bool
    detail: str
    records: list[HealthProbeRecord] = field(default_factory=list)

    @property
    def last_failure(self) -> str | None:
        for record in reversed(self.records):
            if not record.ok:
                return record.summary()
        return None


def http_probe_script(
    http: HttpHealthcheckConfig,
    healthcheck: HealthcheckConfig,
    ports: list[int],
    service_name: str,
) -> str:
    """Build the curl status-code probe for an HTTP healthcheck."""
    timeout = (
        http.timeout_secs
        or healthcheck.timeout_secs
        or HEALTHCHECK_DEFAULTS["probe_timeout_secs"]
    )
    expected = http.expected_status or HEALTHCHECK_DEFAULTS["http_expected_status"]
    if http.url:
        url = http.url
    else:
        port = http.port or (ports[0] if ports else None)
        if port is None:
            raise ConfigError(
                f"services.{service_name}.healthcheck.http",
                "http healthcheck requires `http.port` or service ports",
            )
        path = http.path or HEALTHCHECK_DEFAULTS["http_path"]
        url = f"http://127.0.0.1:{port}{path}"
    return (
        f"code=$(curl -sS -o /dev/null -w '%{{http_code}}' --max-time {int(timeout)} "
        f"{shell_quote(url)} || true); [ \"$code\" = \"{int(expected)}\" ]"
    )


def tcp_probe_script(tcp: TcpHealthcheckConfig, healthcheck: HealthcheckConfig) -> str:
    """Build the netcat connect probe for a TCP healthcheck."""
    timeout = (
        tcp.timeout_secs
        or healthcheck.timeout_secs
        or HEALTHCHECK_DEFAULTS["probe_timeout_secs"]
    )
    host = tcp.host or "127.0.0.1"
    return f"nc -z -w {int(timeout)} {shell_quote(host)} {int(tcp.port)}"


async def _probe_once(
    runtime: ContainerRuntime,
    service_name: str,
    service: ServiceConfig,
    healthcheck: HealthcheckConfig,
    profile: str,
) -> HealthProbeRecord:
    if healthcheck.command:
        command = join_command(["docker", "exec", service_name, *healthcheck.command])
        result = await runtime.exec(service_name, list(healthcheck.command))
        return HealthProbeRecord.from_result(profile, command, result)
    if healthcheck.http is not None:
        script = http_probe_script(
            healthcheck.http, healthcheck, service.ports, service_name
        )
        result = await runtime.run_host(script)
        return HealthProbeRecord.from_result(profile, script, result)
    if healthcheck.tcp is not None:
        script = tcp_probe_script(healthcheck.tcp, healthcheck)
        result = await runtime.run_host(script)
        return HealthProbeRecord.from_result(profile, script, result)
    raise ConfigError(
        f"services.{service_name}.healthcheck",
        f"No executable health profile for service '{service_name}'",
    )


async def _evaluate_profile(
    runtime: ContainerRuntime,
    service_name: str,
    service: ServiceConfig,
    healthcheck: HealthcheckConfig,
    profile: str,
    records: list[HealthProbeRecord],
) -> bool:
    if healthcheck.all:
        for index, child in enumerate(healthcheck.all):
            child_ok = await _evaluate_profile(
                runtime,
                service_name,
                service,
                child,
                f"{profile}.all[{index}]",
                records,
            )
            if not child_ok:
                return False
        return True

    if healthcheck.any:
        for index, child in enumerate(healthcheck.any):
            child_ok = await _evaluate_profile(
                runtime,
                service_name,
                service,
                child,
                f"{profile}.any[{index}]",
                records,
            )
            if child_ok:
                return True
        return False

    retries = healthcheck.retries or int(HEALTHCHECK_DEFAULTS["retries"])
    interval = (
        healthcheck.interval_secs
        if healthcheck.interval_secs is not None
        else int(HEALTHCHECK_DEFAULTS["interval_secs"])
    )
    for attempt in range(1, retries + 1):
        record = await _probe_once(runtime, service_name, service, healthcheck, profile)
        records.append(record)
        if record.ok:
            return True
        logger.debug(
            "Health probe %s for %s failed (attempt %d/%d)",
            profile,
            service_name,
            attempt,
            retries,
        )
        if attempt < retries and interval > 0:
            await asyncio.sleep(interval)
    return False


async def evaluate_service_health(
    runtime: ContainerRuntime, service_name: str, service: ServiceConfig
) -> HealthEvaluation:
    """Evaluate a service's healthcheck on its runtime.

    Services without a healthcheck pass with a "skipped" detail.
    """
    if service.healthcheck is None:
        return HealthEvaluation(ok=True, detail="missing healthcheck (skipped)")

    records: list[HealthProbeRecord] = []
    ok = await _evaluate_profile(
        runtime, service_name, service, service.healthcheck, "root", records
    )
    if ok:
        detail = f"Healthcheck passed for service '{service_name}'"
    else:
        evaluation = HealthEvaluation(ok=False, detail="", records=records)
        detail = (
            f"Healthcheck failed for service '{service_name}': "
            f"{evaluation.last_failure or 'no probe succeeded'}"
        )
    return HealthEvaluation(ok=ok, detail=detail, records=records)


async def run_healthcheck(
    runtime: ContainerRuntime, service_name: str, service: ServiceConfig
) -> HealthEvaluation:
    """Run the health gate and raise when it fails.

    Raises:
        HealthGateError: With the last observed failure text
    """
    evaluation = await evaluate_service_health(runtime, service_name, service)
    if not evaluation.ok:
        raise HealthGateError(
            service_name, evaluation.last_failure or evaluation.detail
        )
    logger.info(evaluation.detail)
    return evaluation
