"""Per-invocation context passed explicitly to every orchestration flow."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from convoy.config.loader import ConfigLoader
from convoy.models.config import ConvoyConfig
from convoy.providers import get_provider
from convoy.providers.base import MetalProvider
from convoy.runtime.containers import ContainerRuntime, create_runtime
from convoy.runtime.transport import ShellRunner, SshShellRunner

ProviderFactory = Callable[[str, dict[str, str]], MetalProvider]
RuntimeFactory = Callable[..., ContainerRuntime]
RunnerFactory = Callable[[str, str | None], ShellRunner]


@dataclass
class RunContext:
    """Everything a command needs besides the configuration file contents.

    Nothing here is read implicitly from process state; the CLI builds the
    context from its options and tests build it directly with fakes.

    Attributes:
        config_path: Path to ``convoy.yaml``
        env: Environment overlay name, if any
        dry_run: Plan only; no mutation and no state write
        allow_local_deploy: Permit local deploys while servers are declared
        state_dir: Override for the state directory
        runtime_kind: ``shell`` or ``docker``
        provider_options: Options passed to every provider client
        provider_factory: Builds a provider client from its name and options
        runtime_factory: Builds a container runtime for a target and host
        runner_factory: Builds a shell runner for a host and ssh key
    """

    config_path: Path
    env: str | None = None
    dry_run: bool = False
    allow_local_deploy: bool = False
    state_dir: Path | None = None
    runtime_kind: str = "shell"
    provider_options: dict[str, str] = field(default_factory=dict)
    provider_factory: ProviderFactory = get_provider
    runtime_factory: RuntimeFactory = create_runtime
    runner_factory: RunnerFactory = SshShellRunner

    @property
    def base_dir(self) -> Path:
        """Directory that relative script paths are resolved against."""
        return self.config_path.parent

    def load_config(self) -> ConvoyConfig:
        """Load and validate the configuration for this invocation.

        Raises:
            ConfigError: If the configuration cannot be loaded
        """
        return ConfigLoader().load(self.config_path, env_name=self.env)
