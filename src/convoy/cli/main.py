"""Entry point for the ``convoy`` command."""

from __future__ import annotations

from pathlib import Path

import click
from pydantic import ValidationError

from convoy import __version__
from convoy.cli.commands.destroy import destroy
from convoy.cli.commands.doctor import doctor
from convoy.cli.commands.init import init
from convoy.cli.commands.logs import logs
from convoy.cli.commands.script import script
from convoy.cli.commands.status import status
from convoy.cli.commands.up import deploy, up
from convoy.cli.models import GlobalOptions
from convoy.config.validator import flatten_pydantic_errors
from convoy.lib.logging_config import setup_logging


@click.group(name="convoy", invoke_without_command=True)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to convoy.yaml (default: ./convoy.yaml)",
)
@click.option(
    "--env",
    default=None,
    help="Environment overlay to merge (reads convoy.<env>.yaml)",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for local state files",
)
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Emit machine-readable JSON",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose debug logging",
)
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    help="Only show warnings and errors",
)
@click.version_option(__version__, prog_name="convoy")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Path | None,
    env: str | None,
    state_dir: Path | None,
    json_output: bool,
    verbose: bool,
    quiet: bool,
) -> None:
    """Provision servers and roll out containers from convoy.yaml.

    Example:

        convoy init

        convoy up --dry-run

        convoy --env staging deploy api
    """
    try:
        ctx.obj = GlobalOptions(
            config_path=config_path,
            env=env,
            state_dir=state_dir,
            json_output=json_output,
            verbose=verbose,
            quiet=quiet,
        )
    except ValidationError as e:
        raise click.UsageError("; ".join(flatten_pydantic_errors(e))) from e

    setup_logging(verbose=verbose, quiet=quiet)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


main.add_command(init)
main.add_command(up)
main.add_command(deploy)
main.add_command(status)
main.add_command(logs)
main.add_command(destroy)
main.add_command(doctor)
main.add_command(script)


if __name__ == "__main__":
    main()
