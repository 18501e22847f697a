"""Tests for the up, deploy, status, destroy and doctor flows.

Providers, container runtimes and shell runners are replaced by in-memory
fakes through RunContext factories.
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from convoy.context import RunContext
from convoy.deploy import orchestrator
from convoy.deploy.state import load_state, save_state, state_file_path
from convoy.deploy.targets import LocalTarget, RemoteTarget
from convoy.lib.errors import (
    DeployError,
    NonRetryableError,
    PreflightError,
    ProviderError,
    RolloutFailedError,
    ScriptError,
    ServiceNotFoundError,
)
from convoy.lib.shell import ShellResult
from convoy.models.provider import CreateRequestValidation
from convoy.models.state import HealthState, LocalState, ServerState, ServiceState

CONFIG = """
project:
  name: shop
infra:
  servers:
    - name: app-1
      provider: hetzner
      region: nbg1
      server_type: cx22
      ssh_key: SSH_KEY
services:
  db:
    image: postgres:16
    healthcheck:
      command: [pg_isready]
      retries: 1
      interval_secs: 0
  api:
    image: acme/api:2
    ports: [8080]
    depends_on: [db]
  worker:
    image: acme/worker:2
"""

LOCAL_CONFIG = """
project:
  name: shop
services:
  db:
    image: postgres:16
  api:
    image: acme/api:2
    depends_on: [db]
  worker:
    image: acme/worker:2
"""

HOOKS = """
scripts:
  bootstrap:
    target: all
    file: bootstrap.sh
hooks:
  post_provision: [bootstrap]
"""


class Harness:
    """Fakes wired into a RunContext, with the calls they received."""

    def __init__(self, tmp_path: Path, provider: Any, runtime: Any, runner: Any):
        self.tmp_path = tmp_path
        self.state_dir = tmp_path / "state"
        self.provider = provider
        self.runtime = runtime
        self.runner = runner
        self.runtime_calls: list[tuple[str, Any, str | None]] = []
        self.runner_calls: list[tuple[str, str | None]] = []

    def _runtime_factory(self, kind: str, target: Any, host: str | None) -> Any:
        self.runtime_calls.append((kind, target, host))
        return self.runtime

    def _runner_factory(self, host: str, ssh_key: str | None) -> Any:
        self.runner_calls.append((host, ssh_key))
        return self.runner

    def context(self, config_path: Path, **overrides: Any) -> RunContext:
        return RunContext(
            config_path=config_path,
            state_dir=self.state_dir,
            provider_factory=lambda _name, _options: self.provider,
            runtime_factory=self._runtime_factory,
            runner_factory=self._runner_factory,
            **overrides,
        )

    def state(self) -> LocalState:
        return load_state("shop", self.state_dir)

    def state_written(self) -> bool:
        return state_file_path("shop", self.state_dir).exists()


@pytest.fixture
def harness(
    tmp_path: Path,
    fake_provider_cls: type,
    fake_runtime_cls: type,
    fake_runner_cls: type,
) -> Harness:
    return Harness(
        tmp_path, fake_provider_cls(), fake_runtime_cls(), fake_runner_cls()
    )


@pytest.fixture
def config_path(write_config: Callable[..., Path], ssh_key: Path) -> Path:
    return write_config(CONFIG.replace("SSH_KEY", str(ssh_key)))


@pytest.fixture(autouse=True)
def no_sleep() -> Generator[AsyncMock, None, None]:
    with patch("convoy.lib.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


class TestUp:
    """Tests for orchestrator.up."""

    @pytest.mark.asyncio
    async def test_fresh_project(self, harness: Harness, config_path: Path) -> None:
        """Servers are created, then services deploy in dependency order."""
        report = await orchestrator.up(harness.context(config_path))

        assert [(s.name, s.action, s.id) for s in report.servers] == [
            ("app-1", "created", "100")
        ]
        assert [(s.name, s.action) for s in report.services] == [
            ("db", "deployed"),
            ("api", "deployed"),
            ("worker", "deployed"),
        ]
        assert report.services[0].target == "server:app-1"
        assert harness.runtime.deploys == [
            ("db", "postgres:16"),
            ("api", "acme/api:2"),
            ("worker", "acme/worker:2"),
        ]
        assert {host for _, _, host in harness.runtime_calls} == {"10.0.0.1"}
        assert harness.provider.closed

        state = harness.state()
        assert state.servers["app-1"].id == "100"
        assert state.servers["app-1"].public_ip == "10.0.0.1"
        assert state.servers["app-1"].health is HealthState.HEALTHY
        assert state.services["api"].last_deploy_command == "convoy deploy api"
        assert state.services["api"].image_origin == "config"

    @pytest.mark.asyncio
    async def test_existing_server_is_reused(
        self,
        harness: Harness,
        write_config: Callable[..., Path],
        make_server: Callable[..., Any],
    ) -> None:
        """Existing servers skip key checks and creation."""
        harness.provider.servers["app-1"] = make_server("app-1", ip="203.0.113.9")
        path = write_config(CONFIG.replace("SSH_KEY", "~/.ssh/absent_key.pub"))

        report = await orchestrator.up(harness.context(path))

        assert report.servers[0].action == "unchanged"
        assert harness.provider.created == []
        assert {host for _, _, host in harness.runtime_calls} == {"203.0.113.9"}

    @pytest.mark.asyncio
    async def test_invalid_request_stops_before_mutation(
        self, harness: Harness, config_path: Path
    ) -> None:
        """Test that a rejected create request aborts before any server is made."""
        harness.provider.validation = CreateRequestValidation(
            valid=False,
            reason="unsupported server_type 'cx22'",
            suggested_server_type="cx23",
        )

        with pytest.raises(PreflightError, match="suggested patch: server_type=cx23"):
            await orchestrator.up(harness.context(config_path))

        assert harness.provider.created == []
        assert harness.runtime.deploys == []
        assert not harness.state_written()

    @pytest.mark.asyncio
    async def test_missing_key_file(
        self, harness: Harness, write_config: Callable[..., Path], tmp_path: Path
    ) -> None:
        """Test that a missing ssh key file fails preflight."""
        path = write_config(CONFIG.replace("SSH_KEY", str(tmp_path / "none.pub")))

        with pytest.raises(PreflightError, match="ssh_key path"):
            await orchestrator.up(harness.context(path))

        assert harness.provider.created == []

    @pytest.mark.asyncio
    async def test_permanent_create_error_is_not_retried(
        self, harness: Harness, config_path: Path
    ) -> None:
        """Test that permanent provider errors stop the create retry loop."""
        harness.provider.create_errors = [
            ProviderError("hetzner", "create_server", "invalid_input: bad image", 422)
        ]

        with pytest.raises(NonRetryableError):
            await orchestrator.up(harness.context(config_path))

        assert len(harness.provider.created) == 1
        state = harness.state()
        assert state.servers["app-1"].health is HealthState.UNHEALTHY
        assert "invalid_input" in (state.servers["app-1"].last_error or "")

    @pytest.mark.asyncio
    async def test_transient_create_error_is_retried(
        self, harness: Harness, config_path: Path
    ) -> None:
        """Test that a transient provider error is retried until create succeeds."""
        harness.provider.create_errors = [
            ProviderError("hetzner", "create_server", "502 bad gateway", 502)
        ]

        report = await orchestrator.up(harness.context(config_path))

        assert len(harness.provider.created) == 2
        assert report.servers[0].action == "created"

    @pytest.mark.asyncio
    async def test_failed_service_skips_dependents(
        self,
        harness: Harness,
        config_path: Path,
        fake_runtime_cls: type,
    ) -> None:
        """Test that dependents of a failed service are skipped, not deployed."""
        harness.runtime = fake_runtime_cls(failing={"db"})

        with pytest.raises(RolloutFailedError) as exc_info:
            await orchestrator.up(harness.context(config_path))

        report = exc_info.value.report
        assert isinstance(report, orchestrator.UpReport)
        assert [(s.name, s.action) for s in report.services] == [
            ("db", "failed"),
            ("api", "skipped"),
            ("worker", "deployed"),
        ]
        assert exc_info.value.failed == ["db"]
        state = harness.state()
        assert state.services["db"].health is HealthState.UNHEALTHY
        assert state.services["worker"].health is HealthState.HEALTHY

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(
        self, harness: Harness, config_path: Path
    ) -> None:
        """Test that a dry run plans every action and writes no state."""
        report = await orchestrator.up(harness.context(config_path, dry_run=True))

        assert report.dry_run
        assert [s.action for s in report.servers] == ["plan-create"]
        assert {s.action for s in report.services} == {"planned"}
        assert report.services[0].target == "server:app-1"
        assert harness.provider.created == []
        assert harness.runtime.deploys == []
        assert not harness.state_written()

    @pytest.mark.asyncio
    async def test_post_provision_hook(
        self,
        harness: Harness,
        write_config: Callable[..., Path],
        ssh_key: Path,
    ) -> None:
        """Test that post_provision hooks run on the new server."""
        path = write_config(
            CONFIG.replace("SSH_KEY", str(ssh_key)) + HOOKS,
            files={"bootstrap.sh": "apt-get update\n"},
        )

        report = await orchestrator.up(harness.context(path))

        assert [h.script for h in report.hooks] == ["bootstrap"]
        assert harness.runner_calls == [("10.0.0.1", str(ssh_key))]
        assert "apt-get update" in harness.runner.scripts[0]
        assert "bootstrap@app-1" in harness.state().script_runs

    @pytest.mark.asyncio
    async def test_failed_hook_still_saves_state(
        self,
        harness: Harness,
        write_config: Callable[..., Path],
        ssh_key: Path,
        fake_runner_cls: type,
    ) -> None:
        """Test that state is saved even when a hook script fails."""
        harness.runner = fake_runner_cls(lambda _s: ShellResult(1, "", "E: locked"))
        path = write_config(
            CONFIG.replace("SSH_KEY", str(ssh_key)) + HOOKS,
            files={"bootstrap.sh": "apt-get update\n"},
        )

        with pytest.raises(ScriptError, match="E: locked"):
            await orchestrator.up(harness.context(path))

        assert harness.runtime.deploys == []
        assert harness.state().servers["app-1"].id == "100"


class TestDeploy:
    """Tests for orchestrator.deploy."""

    @pytest.mark.asyncio
    async def test_single_service_with_dependencies(
        self, harness: Harness, write_config: Callable[..., Path]
    ) -> None:
        """Test that deploying one service also deploys its dependencies."""
        path = write_config(LOCAL_CONFIG)

        report = await orchestrator.deploy(harness.context(path), "api")

        assert [s.name for s in report.services] == ["db", "api"]
        assert all(isinstance(t, LocalTarget) for _, t, _ in harness.runtime_calls)
        assert all(host is None for _, _, host in harness.runtime_calls)
        assert set(harness.state().services) == {"db", "api"}

    @pytest.mark.asyncio
    async def test_all_services(
        self, harness: Harness, write_config: Callable[..., Path]
    ) -> None:
        """Test that deploy without a service rolls out everything in order."""
        report = await orchestrator.deploy(harness.context(write_config(LOCAL_CONFIG)))
        assert [s.name for s in report.services] == ["db", "api", "worker"]

    @pytest.mark.asyncio
    async def test_local_deploy_refused_with_servers(
        self, harness: Harness, write_config: Callable[..., Path], ssh_key: Path
    ) -> None:
        """Test that local deploys are refused while servers are declared."""
        text = CONFIG.replace("SSH_KEY", str(ssh_key)).replace(
            "  name: shop\n", "  name: shop\n  deploy_mode: local\n"
        )
        path = write_config(text)

        with pytest.raises(RolloutFailedError):
            await orchestrator.deploy(harness.context(path), "worker")

        allowed = await orchestrator.deploy(
            harness.context(path, allow_local_deploy=True), "worker"
        )
        assert allowed.services[0].action == "deployed"
        assert isinstance(harness.runtime_calls[-1][1], LocalTarget)

    @pytest.mark.asyncio
    async def test_remote_target_uses_cached_address(
        self, harness: Harness, config_path: Path
    ) -> None:
        """Test that a cached server address is used without a provider lookup."""
        save_state(
            LocalState(
                project="shop",
                servers={
                    "app-1": ServerState(provider="hetzner", public_ip="192.0.2.4")
                },
            ),
            harness.state_dir,
        )

        await orchestrator.deploy(harness.context(config_path), "worker")

        [(kind, target, host)] = harness.runtime_calls
        assert kind == "shell"
        assert isinstance(target, RemoteTarget)
        assert host == "192.0.2.4"


class TestStatus:
    """Tests for orchestrator.status."""

    @pytest.mark.asyncio
    async def test_observes_and_reports_drift(
        self,
        harness: Harness,
        config_path: Path,
        make_server: Callable[..., Any],
    ) -> None:
        """Test that status refreshes health and reports cache-only services."""
        harness.provider.servers["app-1"] = make_server("app-1")
        harness.runtime.images.update({"db": "postgres:16", "api": "acme/api:1"})
        save_state(
            LocalState(project="shop", services={"old": ServiceState(image="x")}),
            harness.state_dir,
        )

        report = await orchestrator.status(harness.context(config_path))

        assert report.servers["app-1"].health is HealthState.HEALTHY
        assert report.servers["app-1"].public_ip == "10.0.0.1"
        assert report.services["api"].image == "acme/api:1"
        assert report.services["api"].health is HealthState.HEALTHY
        assert report.services["worker"].last_error == "container not found"
        assert report.services["worker"].health is HealthState.UNHEALTHY
        assert report.drift.extra_services_in_cache == ["old"]
        assert harness.state().services["db"].last_status == "running"

    @pytest.mark.asyncio
    async def test_drift_uses_cache_before_observation(
        self,
        harness: Harness,
        config_path: Path,
        make_server: Callable[..., Any],
    ) -> None:
        """Resources absent from the loaded cache are reported missing."""
        harness.provider.servers["app-1"] = make_server("app-1")

        first = await orchestrator.status(harness.context(config_path))
        second = await orchestrator.status(harness.context(config_path))

        assert first.drift.missing_servers_in_cache == ["app-1"]
        assert first.drift.missing_services_in_cache == ["api", "db", "worker"]
        assert first.drift.has_drift
        assert second.drift.missing_servers_in_cache == []
        assert second.drift.missing_services_in_cache == []
        assert not second.drift.has_drift

    @pytest.mark.asyncio
    async def test_missing_server(self, harness: Harness, config_path: Path) -> None:
        """Test that a server absent at the provider is recorded as not_found."""
        report = await orchestrator.status(harness.context(config_path))

        entry = report.servers["app-1"]
        assert entry.last_status == "not_found"
        assert entry.last_error == "server not found at provider"
        assert all(host is None for _, _, host in harness.runtime_calls)


class TestLogs:
    """Tests for orchestrator.logs."""

    @pytest.mark.asyncio
    async def test_reads_container_logs(
        self,
        harness: Harness,
        config_path: Path,
        make_server: Callable[..., Any],
    ) -> None:
        """Logs are read on the service's server with the requested tail."""
        harness.provider.servers["app-1"] = make_server("app-1")
        harness.runtime.images["api"] = "acme/api:2"
        harness.runtime.logs = AsyncMock(return_value=["GET /", "GET /health"])

        report = await orchestrator.logs(harness.context(config_path), "api", 20)

        harness.runtime.logs.assert_awaited_once_with("api", 20)
        assert report.service == "api"
        assert report.target == "server:app-1"
        assert report.container_id == "id-api"
        assert report.status == "running"
        assert report.lines == ["GET /", "GET /health"]
        assert harness.runtime_calls[0][2] == "10.0.0.1"
        assert not harness.state_written()

    @pytest.mark.asyncio
    async def test_unknown_service(self, harness: Harness, config_path: Path) -> None:
        """An undeclared service fails before any runtime is built."""
        with pytest.raises(ServiceNotFoundError, match="'cache' not found"):
            await orchestrator.logs(harness.context(config_path), "cache")

        assert harness.runtime_calls == []

    @pytest.mark.asyncio
    async def test_container_not_running(
        self, harness: Harness, config_path: Path
    ) -> None:
        """A declared service without a container points at convoy deploy."""
        with pytest.raises(DeployError, match="convoy deploy worker") as exc_info:
            await orchestrator.logs(harness.context(config_path), "worker")

        assert exc_info.value.operation == "logs"
        assert exc_info.value.resource == "worker"


class TestDestroy:
    """Tests for orchestrator.destroy."""

    def _seed(self, harness: Harness, server_id: str | None = "id-app-1") -> None:
        save_state(
            LocalState(
                project="shop",
                servers={
                    "app-1": ServerState(
                        provider="hetzner", id=server_id, public_ip="10.0.0.1"
                    )
                },
                services={
                    "db": ServiceState(image="postgres:16"),
                    "api": ServiceState(image="acme/api:2"),
                    "gone": ServiceState(image="x"),
                },
            ),
            harness.state_dir,
        )

    @pytest.mark.asyncio
    async def test_removes_services_then_servers(
        self,
        harness: Harness,
        config_path: Path,
        make_server: Callable[..., Any],
    ) -> None:
        """Test that destroy removes containers before destroying servers."""
        harness.provider.servers["app-1"] = make_server("app-1")
        self._seed(harness)

        report = await orchestrator.destroy(harness.context(config_path))

        assert report.removed_services == ["api", "db"]
        assert harness.runtime.removed == ["api", "db"]
        assert report.destroyed_servers == ["app-1"]
        assert harness.provider.destroyed == ["id-app-1"]
        state = harness.state()
        assert state.services == {}
        assert state.servers == {}

    @pytest.mark.asyncio
    async def test_services_only(self, harness: Harness, config_path: Path) -> None:
        """Test that servers=False leaves servers and their state alone."""
        self._seed(harness)

        report = await orchestrator.destroy(
            harness.context(config_path), servers=False
        )

        assert report.destroyed_servers == []
        assert set(harness.state().servers) == {"app-1"}

    @pytest.mark.asyncio
    async def test_unknown_server_id_is_not_found(
        self, harness: Harness, config_path: Path
    ) -> None:
        """Test that a server recorded without an id is dropped as not found."""
        self._seed(harness, server_id=None)

        report = await orchestrator.destroy(harness.context(config_path))

        assert report.not_found == ["app-1"]
        assert harness.state().servers == {}

    @pytest.mark.asyncio
    async def test_failed_destroy_keeps_entry(
        self, harness: Harness, config_path: Path
    ) -> None:
        """Test that a failed server destroy keeps its state entry."""
        self._seed(harness, server_id="999")

        report = await orchestrator.destroy(harness.context(config_path))

        assert report.failed == ["app-1"]
        assert "app-1" in harness.state().servers


class TestDoctor:
    """Tests for orchestrator.doctor."""

    @pytest.mark.asyncio
    async def test_healthy_project(
        self, harness: Harness, write_config: Callable[..., Path], ssh_key: Path
    ) -> None:
        """Test that a well-formed project yields no issues or warnings."""
        path = write_config(
            """
            project:
              name: shop
            infra:
              servers:
                - name: app-1
                  provider: hetzner
                  server_type: cx22
                  ssh_key: SSH_KEY
            services:
              api:
                image: acme/api:2
                healthcheck:
                  tcp:
                    port: 80
            """.replace("SSH_KEY", str(ssh_key))
        )

        report = await orchestrator.doctor(harness.context(path))

        assert report.ok
        assert report.warnings == []

    @pytest.mark.asyncio
    async def test_reports_issues_and_warnings(
        self, harness: Harness, write_config: Callable[..., Path]
    ) -> None:
        """Test that doctor collects every issue without creating servers."""
        harness.provider.validation = CreateRequestValidation(
            valid=False, reason="sold out", suggested_region="hel1"
        )
        path = write_config(
            """
            project:
              name: shop
              deploy_mode: local
            infra:
              servers:
                - name: app-1
                  provider: hetzner
                  server_type: cx22
                  ssh_key: deploy-key
            services:
              api:
                image: acme/api:latest
                env:
                  DB_PASSWORD: hunter2
            """
        )

        report = await orchestrator.doctor(harness.context(path))

        assert not report.ok
        assert report.issues[0] == (
            "project.deploy_mode=local while infra.servers exists"
        )
        assert "infra 'app-1': ssh_key path 'deploy-key' not found" in report.issues
        assert "infra 'app-1': sold out | suggested patch: region=hel1" in (
            report.issues
        )
        assert any("target resolution failed" in i for i in report.issues)
        assert report.warnings == [
            "service 'api' uses mutable :latest image tag",
            "service 'api' has secret-like env keys in config",
            "service 'api' has no healthcheck configured",
        ]
        assert harness.provider.created == []

    @pytest.mark.asyncio
    async def test_provider_init_failure(
        self, harness: Harness, config_path: Path
    ) -> None:
        """Test that provider construction errors are reported as issues."""
        def no_token(name: str, _options: dict[str, str]) -> Any:
            raise ProviderError(name, "configure", "token missing")

        ctx = harness.context(config_path)
        ctx.provider_factory = no_token

        report = await orchestrator.doctor(ctx)

        assert any("init failed (credential/token check)" in i for i in report.issues)

    @pytest.mark.asyncio
    async def test_warns_when_provider_lacks_direct_ssh(
        self, harness: Harness, write_config: Callable[..., Path], ssh_key: Path
    ) -> None:
        """Providers reached only through their own ssh gateway are flagged."""
        path = write_config(
            """
            project:
              name: shop
            infra:
              servers:
                - name: edge-1
                  provider: fly
                  server_type: shared-cpu-1x
                  ssh_key: SSH_KEY
            services:
              api:
                image: acme/api:2
                healthcheck:
                  tcp:
                    port: 80
            """.replace("SSH_KEY", str(ssh_key))
        )

        report = await orchestrator.doctor(harness.context(path))

        assert report.warnings == [
            "infra 'edge-1': provider 'fly' does not offer direct ssh, "
            "so hooks and remote deploys cannot reach it"
        ]


class TestScripts:
    """Tests for running and planning named scripts."""

    @pytest.mark.asyncio
    async def test_run_named_script(
        self,
        harness: Harness,
        write_config: Callable[..., Path],
        ssh_key: Path,
        make_server: Callable[..., Any],
    ) -> None:
        """Test that a named script runs on the server and is recorded."""
        harness.provider.servers["app-1"] = make_server("app-1", ip="203.0.113.5")
        path = write_config(
            CONFIG.replace("SSH_KEY", str(ssh_key)) + HOOKS,
            files={"bootstrap.sh": "true\n"},
        )

        report = await orchestrator.run_named_script(harness.context(path), "bootstrap")

        assert report.failed == []
        assert harness.runner_calls == [("203.0.113.5", str(ssh_key))]
        assert "bootstrap@app-1" in harness.state().script_runs
        assert orchestrator.plan_named_scripts(harness.context(path))[0].action == "run"

    @pytest.mark.asyncio
    async def test_unreachable_server(
        self, harness: Harness, write_config: Callable[..., Path], ssh_key: Path
    ) -> None:
        """Test that a server with no known address fails the script run."""
        path = write_config(
            CONFIG.replace("SSH_KEY", str(ssh_key)) + HOOKS,
            files={"bootstrap.sh": "true\n"},
        )

        with pytest.raises(ScriptError, match="No address known"):
            await orchestrator.run_named_script(harness.context(path), "bootstrap")

        assert harness.runner_calls == []
        assert harness.state_written()
