"""Pydantic models for CLI options shared by every command."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from convoy.config.defaults import DEFAULT_CONFIG_FILENAME
from convoy.config.loader import find_config_path
from convoy.context import RunContext


class GlobalOptions(BaseModel):
    """Options given to the ``convoy`` group, before the subcommand.

    Attributes:
        config_path: Explicit path to convoy.yaml, if given
        env: Environment overlay name
        state_dir: Override for the state directory
        json_output: Emit machine-readable JSON instead of text
        verbose: Enable debug logging
        quiet: Only log warnings and errors
    """

    config_path: Path | None = Field(None, description="Path to convoy.yaml")
    env: str | None = Field(None, description="Environment overlay name")
    state_dir: Path | None = Field(None, description="State directory override")
    json_output: bool = Field(False, description="Emit JSON output")
    verbose: bool = Field(False, description="Enable debug logging")
    quiet: bool = Field(False, description="Only log warnings and errors")

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: str | None) -> str | None:
        """Validate the environment name used to build the overlay file name.

        Raises:
            ValueError: If the name is empty or contains path characters
        """
        if v is None:
            return v
        if not v:
            raise ValueError("Environment name cannot be empty")
        if not all(c.isalnum() or c in "-_" for c in v):
            raise ValueError(
                "Environment name can only contain alphanumeric characters, "
                "hyphens, and underscores"
            )
        return v

    def resolve_config_path(self) -> Path:
        """Return the configuration path, searching the working directory.

        Raises:
            ConfigError: If no path was given and none is found
        """
        if self.config_path is not None:
            return self.config_path
        return find_config_path()

    def init_target(self) -> Path:
        """Where ``convoy init`` writes its example file."""
        return self.config_path or Path.cwd() / DEFAULT_CONFIG_FILENAME

    def run_context(self, **overrides: object) -> RunContext:
        """Build the RunContext for a command.

        Raises:
            ConfigError: If no configuration file can be found
        """
        return RunContext(
            config_path=self.resolve_config_path(),
            env=self.env,
            state_dir=self.state_dir,
            **overrides,  # type: ignore[arg-type]
        )
