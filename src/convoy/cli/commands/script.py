"""Click commands for provisioning scripts."""

from __future__ import annotations

import asyncio

import click

from convoy.cli.models import GlobalOptions
from convoy.cli.output import emit_json, handle_command_errors
from convoy.deploy import orchestrator


@click.group(name="script", invoke_without_command=True)
@click.pass_context
def script(ctx: click.Context) -> None:
    """List, plan and run provisioning scripts.

    Subcommands:

        list    Show declared scripts
        plan    Show which scripts would run where
        run     Run a script on its target servers
    """
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@script.command(name="list")
@click.pass_obj
def list_scripts(options: GlobalOptions) -> None:
    """Show declared scripts."""
    with handle_command_errors():
        config = options.run_context().load_config()
        rows = [
            {
                "name": name,
                "target": item.target,
                "file": item.file,
                "idempotency": item.idempotency.value,
            }
            for name, item in sorted(config.scripts.items())
        ]
        if options.json_output:
            emit_json(rows)
            return
        if not rows:
            click.echo("No scripts configured.")
        for row in rows:
            click.echo(
                f"{row['name']:<20} {row['target']:<20} "
                f"{row['idempotency']:<10} {row['file']}"
            )


@script.command(name="plan")
@click.argument("name", required=False)
@click.pass_obj
def plan(options: GlobalOptions, name: str | None) -> None:
    """Show which scripts would run where, and why."""
    with handle_command_errors():
        rows = orchestrator.plan_named_scripts(options.run_context(), name)
        if options.json_output:
            emit_json(rows)
            return
        if not rows:
            click.echo("No scripts configured.")
        for row in rows:
            click.secho(
                f"{row.script}@{row.server}: {row.action} ({row.reason})",
                fg="yellow" if row.action == "skip" else None,
            )


@script.command(name="run")
@click.argument("name")
@click.option("--server", default=None, help="Run on this server only")
@click.option(
    "--all-servers",
    is_flag=True,
    help="Run on every declared server, ignoring the script target",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be done without executing",
)
@click.pass_obj
def run(
    options: GlobalOptions,
    name: str,
    server: str | None,
    all_servers: bool,
    dry_run: bool,
) -> None:
    """Run script NAME on its target servers.

    Example:

        convoy script run bootstrap

        convoy script run migrate --server app-1
    """
    with handle_command_errors():
        run_ctx = options.run_context(dry_run=dry_run)
        report = asyncio.run(
            orchestrator.run_named_script(run_ctx, name, server, all_servers)
        )
        if options.json_output:
            emit_json(report)
            return
        for record in report.records:
            if record.skipped:
                click.secho(
                    f"{record.server}: skipped ({record.detail})", fg="yellow"
                )
            else:
                click.secho(f"{record.server}: {record.detail}", fg="green")
