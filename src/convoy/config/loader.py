"""Configuration loader for Convoy projects.

This module provides the ConfigLoader class for loading ``convoy.yaml``,
applying an optional environment overlay and validating the result.
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from convoy.config.defaults import DEFAULT_CONFIG_FILENAME, EXAMPLE_CONFIG
from convoy.config.env_loader import load_env_file, substitute_env_vars
from convoy.config.validator import flatten_pydantic_errors
from convoy.lib.errors import ConfigError
from convoy.models.config import ConvoyConfig

logger = logging.getLogger(__name__)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    """Deep merge override dict into base dict (in-place).

    For nested dicts, merging is recursive.
    For other types, override completely replaces base.
    """
    for key, override_value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(override_value, dict)
        ):
            _deep_merge(base[key], override_value)
        else:
            base[key] = override_value


def apply_overlay(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Apply an environment overlay document to a base document (in-place).

    Project fields merge, servers are replaced by name or appended, services
    and scripts are replaced per key and hooks are replaced wholesale.
    """
    if isinstance(overlay.get("project"), dict):
        project = base.setdefault("project", {})
        _deep_merge(project, overlay["project"])

    overlay_infra = overlay.get("infra")
    if isinstance(overlay_infra, dict):
        infra = base.setdefault("infra", {})
        servers = infra.setdefault("servers", [])
        for server in overlay_infra.get("servers") or []:
            name = server.get("name") if isinstance(server, dict) else None
            for index, existing in enumerate(servers):
                if isinstance(existing, dict) and existing.get("name") == name:
                    servers[index] = server
                    break
            else:
                servers.append(server)

    for section in ("services", "scripts"):
        if isinstance(overlay.get(section), dict):
            target = base.setdefault(section, {})
            target.update(overlay[section])

    if "hooks" in overlay:
        base["hooks"] = overlay["hooks"]

    return base


class ConfigLoader:
    """Load, merge and validate Convoy configuration files.

    The loader handles:
    - ``${VAR}`` / ``${VAR:-default}`` substitution from the process
      environment and a ``.env`` file beside the configuration
    - an optional ``<stem>.<env>.yaml`` overlay
    - conversion of validation errors into readable messages
    """

    def read_document(self, path: Path, env: dict[str, str]) -> dict[str, Any]:
        """Read one YAML document with env var substitution.

        Raises:
            ConfigError: If the file is unreadable, not YAML or not a mapping
        """
        try:
            raw_text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(
                "file",
                f"Configuration file not found at {path}. "
                f"Please ensure the file exists at this path.",
            ) from e

        substituted = substitute_env_vars(raw_text, env)
        try:
            content = yaml.safe_load(substituted)
        except yaml.YAMLError as e:
            raise ConfigError(
                "yaml_parse", f"Failed to parse YAML file {path}: {str(e)}"
            ) from e

        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigError("yaml_parse", f"Top level of {path} must be a mapping")
        return content

    def overlay_path(self, path: Path, env_name: str) -> Path:
        """Return the overlay file path for an environment name."""
        suffix = path.suffix or ".yaml"
        return path.parent / f"{path.stem}.{env_name}{suffix}"

    def load(self, file_path: str | Path, env_name: str | None = None) -> ConvoyConfig:
        """Load and validate a Convoy configuration.

        Args:
            file_path: Path to convoy.yaml
            env_name: Optional environment overlay name (e.g. "staging")

        Returns:
            Validated ConvoyConfig

        Raises:
            ConfigError: If the file cannot be read, parsed or validated
        """
        path = Path(file_path)
        substitution_env = load_env_file(path.parent / ".env")
        substitution_env.update(os.environ)

        document = self.read_document(path, substitution_env)

        if env_name:
            overlay = self.overlay_path(path, env_name)
            if overlay.exists():
                logger.debug("Applying overlay %s", overlay)
                apply_overlay(document, self.read_document(overlay, substitution_env))
            else:
                logger.debug("No overlay for environment %s at %s", env_name, overlay)

        try:
            return ConvoyConfig(**document)
        except PydanticValidationError as e:
            error_text = "\n".join(flatten_pydantic_errors(e))
            raise ConfigError(
                "validation", f"Invalid configuration in {file_path}:\n{error_text}"
            ) from e


def find_config_path(start_dir: str | Path | None = None) -> Path:
    """Return ``convoy.yaml`` in ``start_dir`` (default: cwd).

    Raises:
        ConfigError: If no configuration file exists there
    """
    directory = Path(start_dir) if start_dir else Path.cwd()
    candidate = directory / DEFAULT_CONFIG_FILENAME
    if candidate.exists():
        return candidate
    raise ConfigError("file", f"No {DEFAULT_CONFIG_FILENAME} found in {directory}")


def write_example_config(path: str | Path) -> Path:
    """Write the example configuration to ``path``.

    Raises:
        ConfigError: If the file already exists or cannot be written
    """
    target = Path(path)
    if target.exists():
        raise ConfigError("file", f"{target} already exists")
    try:
        target.write_text(EXAMPLE_CONFIG, encoding="utf-8")
    except OSError as e:
        raise ConfigError("file", f"Failed to write {target}: {e}") from e
    return target
