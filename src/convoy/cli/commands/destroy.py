"""Click command for tearing down recorded resources."""

from __future__ import annotations

import asyncio

import click

from convoy.cli.models import GlobalOptions
from convoy.cli.output import emit_json, handle_command_errors
from convoy.deploy import orchestrator
from convoy.deploy.state import load_state


@click.command(name="destroy")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option(
    "--services-only",
    is_flag=True,
    help="Remove containers but keep servers",
)
@click.pass_obj
def destroy(options: GlobalOptions, yes: bool, services_only: bool) -> None:
    """Remove deployed containers and destroy servers recorded in state."""
    with handle_command_errors():
        run_ctx = options.run_context()
        config = run_ctx.load_config()
        state = load_state(config.project.name, run_ctx.state_dir)

        if not yes:
            click.secho("The following resources will be DESTROYED:", fg="yellow")
            for name in sorted(state.services):
                click.echo(f"  service {name}")
            if not services_only:
                for name, server in sorted(state.servers.items()):
                    click.echo(f"  server {name} ({server.provider})")
            if not click.confirm("Are you sure?", default=False):
                click.echo("Aborted.")
                return

        report = asyncio.run(
            orchestrator.destroy(run_ctx, servers=not services_only)
        )
        if options.json_output:
            emit_json(report)
            return
        for name in report.removed_services:
            click.secho(f"Removed service {name}", fg="green")
        for name in report.destroyed_servers:
            click.secho(f"Destroyed server {name}", fg="green")
        for name in report.not_found:
            click.secho(f"Server {name} not found (already deleted?)", fg="yellow")
        for name in report.failed:
            click.secho(f"Failed to destroy {name}", fg="red", err=True)
