"""Environment variable handling for configuration files."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values

from convoy.lib.errors import ConfigError

# ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def get_env_var(name: str, default: str | None = None) -> str | None:
    """Return an environment variable, or ``default`` when unset or empty."""
    value = os.environ.get(name)
    return value if value else default


def load_env_file(path: str | Path) -> dict[str, str]:
    """Read KEY=VALUE pairs from a dotenv file.

    Missing files yield an empty mapping. Keys without a value are dropped.
    """
    env_path = Path(path)
    if not env_path.is_file():
        return {}
    return {k: v for k, v in dotenv_values(env_path).items() if v is not None}


def substitute_env_vars(text: str, env: Mapping[str, str] | None = None) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` placeholders in ``text``.

    Args:
        text: Raw configuration text
        env: Variables to substitute from (defaults to the process environment)

    Returns:
        Text with every placeholder replaced

    Raises:
        ConfigError: If a variable without default is not defined
    """
    values = os.environ if env is None else env

    def _replace(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        value = values.get(name)
        if value is not None:
            return value
        if default is not None:
            return default
        raise ConfigError(
            name,
            f"Environment variable '{name}' is not set and has no default",
        )

    return ENV_VAR_PATTERN.sub(_replace, text)
