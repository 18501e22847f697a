"""Click command for creating an example convoy.yaml."""

from __future__ import annotations

import click

from convoy.cli.models import GlobalOptions
from convoy.cli.output import handle_command_errors
from convoy.config.loader import write_example_config


@click.command(name="init")
@click.pass_obj
def init(options: GlobalOptions) -> None:
    """Write an example convoy.yaml.

    The file is written to --config, or ./convoy.yaml. An existing file is
    never overwritten.
    """
    with handle_command_errors():
        path = write_example_config(options.init_target())
        click.secho(f"Created {path}", fg="green")
        click.echo("Edit it, then run `convoy doctor` and `convoy up --dry-run`.")
