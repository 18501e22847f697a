"""Error handling and output helpers shared by CLI commands."""

from __future__ import annotations

import dataclasses
import json
import sys
from collections.abc import Generator
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any

import click
from pydantic import BaseModel

from convoy.lib.errors import (
    ConfigError,
    ConvoyError,
    DeployError,
    PreflightError,
    ResolutionError,
)
from convoy.lib.logging_config import get_logger

logger = get_logger(__name__)

EXIT_CONFIG_ERROR = 2
EXIT_EXECUTION_ERROR = 3


@contextmanager
def handle_command_errors() -> Generator[None, None, None]:
    """Context manager for consistent error handling in commands.

    Exit codes:
        2: Configuration, dependency resolution or preflight error
        3: Deploy, provider, script, health, state or unexpected error
    """
    try:
        yield
    except ConfigError as e:
        logger.debug("Configuration error: %s", e)
        click.secho("Error: Configuration error", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)
    except (ResolutionError, PreflightError) as e:
        logger.debug("Planning error: %s", e)
        click.secho("Error: Planning failed", fg="red", err=True)
        click.echo(f"  {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)
    except DeployError as e:
        logger.debug("Deploy error: %s", e)
        click.secho(f"Error: {e.operation} failed", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(EXIT_EXECUTION_ERROR)
    except ConvoyError as e:
        logger.debug("Operation error: %s", e)
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(EXIT_EXECUTION_ERROR)
    except Exception as e:
        logger.exception("Unexpected error: %s", e)
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(EXIT_EXECUTION_ERROR)


def to_jsonable(value: Any) -> Any:
    """Convert reports, models and enums into JSON-compatible values."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_jsonable(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    return value


def emit_json(value: Any) -> None:
    click.echo(json.dumps(to_jsonable(value), indent=2, sort_keys=True))
