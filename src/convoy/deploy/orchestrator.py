"""Command flows: up, deploy, status, logs, destroy and doctor.

Every flow takes an explicit RunContext, loads configuration and state once,
and writes state at most once at the end.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import TracebackType

from convoy.config.defaults import (
    DEFAULT_LOG_TAIL,
    SERVER_CREATE_ATTEMPTS,
    SERVER_CREATE_DELAY,
)
from convoy.context import RunContext
from convoy.deploy.dependencies import deployment_order, transitive_dependents
from convoy.deploy.preflight import (
    ServerPreflight,
    check_ssh_key_path,
    format_validation_error,
    is_permanent_provider_error,
    resolve_server_request,
)
from convoy.deploy.rollout import deploy_with_health_gate
from convoy.deploy.scripts import (
    ScriptPlanRow,
    ScriptRunReport,
    plan_scripts,
    run_hook_scripts,
    run_script,
)
from convoy.deploy.state import (
    detect_drift,
    load_state,
    record_server,
    record_service,
    remove_server,
    remove_service,
    save_state,
)
from convoy.deploy.targets import RemoteTarget, RuntimeTarget, resolve_target
from convoy.lib.errors import (
    ConvoyError,
    DeployError,
    PreflightError,
    ProviderError,
    RolloutFailedError,
    ServiceNotFoundError,
)
from convoy.lib.retry import RetryDecision, retry_with_backoff_classified
from convoy.models.config import ConvoyConfig, DeployMode, HookPhase, ServerConfig
from convoy.models.provider import CreateServerRequest, Server
from convoy.models.state import DriftReport, LocalState, ServerState, ServiceState
from convoy.providers import provider_capabilities
from convoy.providers.base import MetalProvider
from convoy.runtime.containers import ContainerRuntime
from convoy.runtime.transport import ShellRunner

logger = logging.getLogger(__name__)

SECRET_ENV_MARKERS = ("PASSWORD", "TOKEN", "SECRET")


@dataclass
class ServerRecord:
    name: str
    provider: str
    action: str
    id: str | None = None
    public_ip: str | None = None


@dataclass
class ServiceRecord:
    name: str
    image: str
    action: str
    target: str = ""
    container_id: str | None = None
    detail: str = ""


@dataclass
class UpReport:
    """Result of an ``up`` or ``deploy`` run."""

    project: str
    dry_run: bool
    servers: list[ServerRecord] = field(default_factory=list)
    services: list[ServiceRecord] = field(default_factory=list)
    hooks: list[ScriptRunReport] = field(default_factory=list)

    @property
    def failed_services(self) -> list[str]:
        return [s.name for s in self.services if s.action == "failed"]


@dataclass
class StatusReport:
    project: str
    servers: dict[str, ServerState]
    services: dict[str, ServiceState]
    drift: DriftReport


@dataclass
class LogsReport:
    service: str
    target: str
    container_id: str
    status: str
    lines: list[str] = field(default_factory=list)


@dataclass
class DestroyReport:
    project: str
    removed_services: list[str] = field(default_factory=list)
    destroyed_servers: list[str] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass
class DoctorReport:
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues


class _Session:
    """Provider clients, provider listings and host addresses for one command."""

    def __init__(self, ctx: RunContext, config: ConvoyConfig, state: LocalState):
        self.ctx = ctx
        self.config = config
        self.state = state
        self._providers: dict[str, MetalProvider] = {}
        self._listings: dict[str, dict[str, Server]] = {}
        self.hosts: dict[str, str] = {}

    async def __aenter__(self) -> _Session:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        for provider in self._providers.values():
            await provider.aclose()

    def provider(self, name: str) -> MetalProvider:
        if name not in self._providers:
            self._providers[name] = self.ctx.provider_factory(
                name, dict(self.ctx.provider_options)
            )
        return self._providers[name]

    async def listing(self, provider_name: str) -> dict[str, Server]:
        """Servers known to a provider, keyed by name, fetched once."""
        if provider_name not in self._listings:
            servers = await self.provider(provider_name).list_servers()
            self._listings[provider_name] = {s.name: s for s in servers}
        return self._listings[provider_name]

    async def host_for(self, server: ServerConfig) -> str | None:
        """Public address of a server from state, else from its provider."""
        if server.name in self.hosts:
            return self.hosts[server.name]
        cached = self.state.servers.get(server.name)
        host = cached.public_ip if cached else None
        if not host:
            try:
                found = (await self.listing(server.provider)).get(server.name)
            except ProviderError as exc:
                logger.warning("Cannot look up address of '%s': %s", server.name, exc)
                found = None
            host = found.public_ip if found else None
        if host:
            self.hosts[server.name] = host
        return host

    async def resolve_hosts(self) -> None:
        for server in self.config.servers:
            await self.host_for(server)

    def runner_for(self, server: ServerConfig) -> ShellRunner:
        host = self.hosts.get(server.name)
        if not host:
            raise DeployError(
                operation="connect",
                message=f"No address known for server '{server.name}'",
                resource=server.name,
            )
        return self.ctx.runner_factory(host, server.ssh_key)

    def target_for(self, service_name: str) -> RuntimeTarget:
        return resolve_target(
            self.config,
            service_name,
            self.config.services[service_name],
            self.ctx.allow_local_deploy,
        )

    async def runtime_for(self, service_name: str) -> tuple[str, ContainerRuntime]:
        target = self.target_for(service_name)
        host = None
        if isinstance(target, RemoteTarget):
            host = await self.host_for(target.server)
        runtime = self.ctx.runtime_factory(self.ctx.runtime_kind, target, host)
        return target.describe(), runtime

    async def run_hooks(self, phase: HookPhase, report: UpReport) -> None:
        if not self.config.hooks.for_phase(phase):
            return
        await self.resolve_hosts()
        report.hooks.extend(
            await run_hook_scripts(
                self.config,
                self.state,
                self.ctx.base_dir,
                phase,
                self.runner_for,
                dry_run=self.ctx.dry_run,
            )
        )


def _save(ctx: RunContext, state: LocalState) -> None:
    if ctx.dry_run:
        logger.info("Dry run: state not written")
        return
    path = save_state(state, ctx.state_dir)
    logger.debug("State written to %s", path)


async def _plan_servers(
    session: _Session,
) -> tuple[dict[str, Server], dict[str, ServerPreflight]]:
    """Find existing servers and preflight the ones that must be created.

    Raises:
        PreflightError: If a key file is missing or a request is invalid
    """
    existing: dict[str, Server] = {}
    to_create: dict[str, ServerPreflight] = {}
    for server in session.config.servers:
        provider = session.provider(server.provider)
        try:
            found = (await session.listing(server.provider)).get(server.name)
        except ProviderError as exc:
            logger.warning("Failed to list %s servers: %s", server.provider, exc)
            found = None
        if found is not None:
            existing[server.name] = found
            continue

        check_ssh_key_path(server)
        preflight = await resolve_server_request(provider, server)
        if not preflight.validation.valid:
            raise PreflightError(
                server.name, format_validation_error(server, preflight)
            )
        to_create[server.name] = preflight
    return existing, to_create


def _classify_provider_error(exc: Exception) -> RetryDecision:
    if is_permanent_provider_error(exc):
        return RetryDecision.STOP
    return RetryDecision.RETRY


async def _provision_servers(
    session: _Session,
    existing: dict[str, Server],
    to_create: dict[str, ServerPreflight],
    report: UpReport,
) -> None:
    for server in session.config.servers:
        found = existing.get(server.name)
        if found is not None:
            logger.info("Server already exists: %s (%s)", found.name, found.id)
            record_server(
                session.state,
                server.name,
                server.provider,
                server_id=found.id,
                public_ip=found.public_ip,
                status=found.status.value,
            )
            report.servers.append(
                ServerRecord(
                    server.name, server.provider, "unchanged", found.id, found.public_ip
                )
            )
            continue

        request = to_create[server.name].request
        if session.ctx.dry_run:
            logger.info(
                "Would create server %s (%s, %s)",
                server.name,
                request.server_type,
                request.region,
            )
            report.servers.append(
                ServerRecord(server.name, server.provider, "plan-create")
            )
            continue

        provider = session.provider(server.provider)

        async def _create(
            _attempt: int,
            request: CreateServerRequest = request,
            provider: MetalProvider = provider,
        ) -> Server:
            return await provider.create_server(request)

        try:
            created = await retry_with_backoff_classified(
                SERVER_CREATE_ATTEMPTS,
                SERVER_CREATE_DELAY,
                f"Create server '{server.name}'",
                _classify_provider_error,
                _create,
            )
        except ConvoyError as exc:
            record_server(session.state, server.name, server.provider, error=str(exc))
            raise

        logger.info("Created server: %s (%s)", created.name, created.id)
        record_server(
            session.state,
            server.name,
            server.provider,
            server_id=created.id,
            public_ip=created.public_ip,
            status=created.status.value,
        )
        if created.public_ip:
            session.hosts[server.name] = created.public_ip
        report.servers.append(
            ServerRecord(
                server.name, server.provider, "created", created.id, created.public_ip
            )
        )


async def _rollout(session: _Session, order: list[str], report: UpReport) -> None:
    """Deploy services in order; a failure skips everything that depends on it."""
    config = session.config
    skipped: dict[str, str] = {}

    for name in order:
        service = config.services[name]
        if name in skipped:
            logger.warning(
                "Skipping service '%s': dependency '%s' failed", name, skipped[name]
            )
            report.services.append(
                ServiceRecord(
                    name,
                    service.image,
                    "skipped",
                    detail=f"dependency '{skipped[name]}' failed",
                )
            )
            continue

        try:
            if session.ctx.dry_run:
                target = session.target_for(name).describe()
                logger.info("Would deploy service %s -> %s", name, service.image)
                report.services.append(
                    ServiceRecord(name, service.image, "planned", target)
                )
                continue
            target, runtime = await session.runtime_for(name)
            result = await deploy_with_health_gate(runtime, name, service)
        except ConvoyError as exc:
            logger.error("Service '%s' failed: %s", name, exc)
            cached = session.state.services.get(name)
            record_service(
                session.state,
                name,
                cached.image if cached else service.image,
                error=str(exc),
            )
            report.services.append(
                ServiceRecord(name, service.image, "failed", detail=str(exc))
            )
            for dependent in transitive_dependents(config.services, name):
                skipped.setdefault(dependent, name)
            continue

        record_service(
            session.state,
            name,
            service.image,
            status=result.deploy.status,
            container=name,
            deploy_command=f"convoy deploy {name}",
            image_origin="config",
        )
        logger.info("Deployed service: %s (%s)", name, result.deploy.container_id)
        report.services.append(
            ServiceRecord(
                name,
                service.image,
                "deployed",
                target,
                result.deploy.container_id,
                result.health.detail,
            )
        )


def _raise_for_failed_services(report: UpReport) -> None:
    failed = report.failed_services
    if failed:
        raise RolloutFailedError(failed, report)


async def up(ctx: RunContext) -> UpReport:
    """Provision servers, then deploy every service in dependency order.

    Planning (dependency order, key files, provider validation) finishes
    before anything is mutated.

    Raises:
        ResolutionError: If the service graph is invalid
        PreflightError: If a server cannot be created as declared
        ScriptError: If a hook script fails
        RolloutFailedError: If any service failed (after state was saved)
    """
    config = ctx.load_config()
    state = load_state(config.project.name, ctx.state_dir)
    report = UpReport(project=config.project.name, dry_run=ctx.dry_run)
    logger.info("Provisioning infrastructure for project: %s", config.project.name)
    if ctx.dry_run:
        logger.info("Dry run enabled - no changes will be made")

    async with _Session(ctx, config, state) as session:
        order = deployment_order(config.services)
        existing, to_create = await _plan_servers(session)

        try:
            await session.run_hooks(HookPhase.PRE_PROVISION, report)
            await _provision_servers(session, existing, to_create, report)
            await session.run_hooks(HookPhase.POST_PROVISION, report)
            await _rollout(session, order, report)
            await session.run_hooks(HookPhase.POST_DEPLOY, report)
        finally:
            _save(ctx, state)

    _raise_for_failed_services(report)
    return report


async def deploy(ctx: RunContext, service: str = "all") -> UpReport:
    """Deploy one service with its dependencies, or all services.

    Raises:
        ResolutionError: If the service or its graph is invalid
        ScriptError: If a post-deploy hook fails
        RolloutFailedError: If any service failed (after state was saved)
    """
    config = ctx.load_config()
    state = load_state(config.project.name, ctx.state_dir)
    report = UpReport(project=config.project.name, dry_run=ctx.dry_run)

    async with _Session(ctx, config, state) as session:
        order = deployment_order(
            config.services, None if service == "all" else service
        )
        try:
            await _rollout(session, order, report)
            await session.run_hooks(HookPhase.POST_DEPLOY, report)
        finally:
            _save(ctx, state)

    _raise_for_failed_services(report)
    return report


async def status(ctx: RunContext) -> StatusReport:
    """Re-observe servers and services, refresh cached health and save it.

    Drift compares the configuration with the cache as loaded, before this
    run records anything.

    Observation failures are recorded on the resource, not raised.
    """
    config = ctx.load_config()
    state = load_state(config.project.name, ctx.state_dir)
    drift = detect_drift(state, config)
    if drift.has_drift:
        logger.warning("Cached state differs from configuration")

    async with _Session(ctx, config, state) as session:
        for server in config.servers:
            try:
                found = (await session.listing(server.provider)).get(server.name)
            except ConvoyError as exc:
                record_server(state, server.name, server.provider, error=str(exc))
                continue
            if found is None:
                record_server(
                    state,
                    server.name,
                    server.provider,
                    status="not_found",
                    error="server not found at provider",
                )
                continue
            record_server(
                state,
                server.name,
                server.provider,
                server_id=found.id,
                public_ip=found.public_ip,
                status=found.status.value,
            )

        for name, service in sorted(config.services.items()):
            try:
                _, runtime = await session.runtime_for(name)
                observed = await runtime.inspect(name)
            except ConvoyError as exc:
                record_service(state, name, service.image, error=str(exc))
                continue
            if observed is None:
                record_service(
                    state,
                    name,
                    service.image,
                    status="missing",
                    error="container not found",
                )
                continue
            record_service(
                state, name, observed.image or service.image, status=observed.status
            )

    save_state(state, ctx.state_dir)
    return StatusReport(
        project=config.project.name,
        servers=dict(state.servers),
        services=dict(state.services),
        drift=drift,
    )


async def logs(
    ctx: RunContext, service: str, tail: int = DEFAULT_LOG_TAIL
) -> LogsReport:
    """Read the last ``tail`` log lines of a service's container.

    Raises:
        ServiceNotFoundError: If the service is not declared
        DeployError: If the container does not exist or its logs cannot be read
    """
    config = ctx.load_config()
    if service not in config.services:
        raise ServiceNotFoundError(service)
    state = load_state(config.project.name, ctx.state_dir)

    async with _Session(ctx, config, state) as session:
        target, runtime = await session.runtime_for(service)
        observed = await runtime.inspect(service)
        if observed is None:
            raise DeployError(
                operation="logs",
                message=(
                    f"Service '{service}' is not currently running. "
                    f"Deploy it first with `convoy deploy {service}`"
                ),
                resource=service,
            )
        lines = await runtime.logs(service, tail)

    logger.debug("Read %d log lines for %s on %s", len(lines), service, target)
    return LogsReport(
        service=service,
        target=target,
        container_id=observed.container_id,
        status=observed.status,
        lines=lines,
    )


async def destroy(
    ctx: RunContext, servers: bool = True, services: bool = True
) -> DestroyReport:
    """Remove recorded containers and destroy recorded servers.

    Entries are dropped from state as resources go away; the state file
    itself is kept.
    """
    config = ctx.load_config()
    state = load_state(config.project.name, ctx.state_dir)
    report = DestroyReport(project=config.project.name)

    async with _Session(ctx, config, state) as session:
        if services:
            declared = [
                n for n in deployment_order(config.services) if n in state.services
            ]
            for name in reversed(declared):
                try:
                    _, runtime = await session.runtime_for(name)
                    await runtime.remove(name)
                except ConvoyError as exc:
                    logger.warning("Failed to remove service %s: %s", name, exc)
                    report.failed.append(name)
                    continue
                remove_service(state, name)
                report.removed_services.append(name)
            for name in sorted(set(state.services) - set(config.services)):
                logger.info("Forgetting undeclared service %s", name)
                remove_service(state, name)

        if servers:
            for name, entry in sorted(state.servers.items()):
                try:
                    server_id = entry.id
                    if not server_id:
                        found = (await session.listing(entry.provider)).get(name)
                        server_id = found.id if found else None
                    if not server_id:
                        logger.warning(
                            "Server not found: %s (may have been already deleted)", name
                        )
                        report.not_found.append(name)
                        remove_server(state, name)
                        continue
                    await session.provider(entry.provider).destroy_server(server_id)
                except ConvoyError as exc:
                    logger.warning("Failed to destroy server %s: %s", name, exc)
                    report.failed.append(name)
                    continue
                logger.info("Destroyed server: %s", name)
                remove_server(state, name)
                report.destroyed_servers.append(name)

    save_state(state, ctx.state_dir)
    return report


async def doctor(ctx: RunContext) -> DoctorReport:
    """Run key-material, provider and service checks without mutating anything."""
    config = ctx.load_config()
    state = LocalState(project=config.project.name)
    report = DoctorReport()

    if config.servers and config.project.deploy_mode == DeployMode.LOCAL:
        report.issues.append("project.deploy_mode=local while infra.servers exists")

    async with _Session(ctx, config, state) as session:
        for server in config.servers:
            try:
                check_ssh_key_path(server)
            except PreflightError as exc:
                report.issues.append(exc.message)
            if not provider_capabilities(server.provider).supports_direct_ssh:
                report.warnings.append(
                    f"infra '{server.name}': provider '{server.provider}' "
                    "does not offer direct ssh, so hooks and remote deploys "
                    "cannot reach it"
                )
            try:
                provider = session.provider(server.provider)
            except ProviderError as exc:
                report.issues.append(
                    f"infra '{server.name}': provider '{server.provider}' "
                    f"init failed (credential/token check): {exc}"
                )
                continue
            try:
                preflight = await resolve_server_request(provider, server)
            except ConvoyError as exc:
                report.issues.append(
                    f"infra '{server.name}': provider preflight failed: {exc}"
                )
                continue
            if not preflight.validation.valid:
                report.issues.append(format_validation_error(server, preflight))

    for name, service in sorted(config.services.items()):
        if service.image.endswith(":latest"):
            report.warnings.append(f"service '{name}' uses mutable :latest image tag")
        if any(m in key for key in service.env for m in SECRET_ENV_MARKERS):
            report.warnings.append(
                f"service '{name}' has secret-like env keys in config"
            )
        if service.healthcheck is None:
            report.warnings.append(f"service '{name}' has no healthcheck configured")
        try:
            resolve_target(config, name, service, ctx.allow_local_deploy)
        except ConvoyError as exc:
            report.issues.append(f"service '{name}': target resolution failed: {exc}")

    try:
        deployment_order(config.services)
    except ConvoyError as exc:
        report.issues.append(str(exc))

    return report


async def run_named_script(
    ctx: RunContext,
    name: str,
    server: str | None = None,
    all_servers: bool = False,
) -> ScriptRunReport:
    """Run one declared script and record successful runs in state.

    Raises:
        ConfigError: If the script or server is unknown
        ScriptError: If any server failed (after state was saved)
    """
    config = ctx.load_config()
    state = load_state(config.project.name, ctx.state_dir)

    async with _Session(ctx, config, state) as session:
        await session.resolve_hosts()
        report = await run_script(
            config,
            state,
            ctx.base_dir,
            name,
            session.runner_for,
            override_server=server,
            all_servers=all_servers,
            dry_run=ctx.dry_run,
        )

    _save(ctx, state)
    report.raise_for_failures()
    return report


def plan_named_scripts(ctx: RunContext, name: str | None = None) -> list[ScriptPlanRow]:
    """Show which scripts would run where, without connecting to anything."""
    config = ctx.load_config()
    state = load_state(config.project.name, ctx.state_dir)
    return plan_scripts(config, state, ctx.base_dir, name)
