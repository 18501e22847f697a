"""Click command for reading service container logs."""

from __future__ import annotations

import asyncio

import click

from convoy.cli.models import GlobalOptions
from convoy.cli.output import emit_json, handle_command_errors
from convoy.config.defaults import DEFAULT_LOG_TAIL
from convoy.deploy import orchestrator
from convoy.runtime.containers import RUNTIME_KINDS


@click.command(name="logs")
@click.argument("service")
@click.option(
    "--tail",
    type=click.IntRange(min=1),
    default=DEFAULT_LOG_TAIL,
    show_default=True,
    help="Number of log lines to show",
)
@click.option(
    "--allow-local-deploy",
    is_flag=True,
    help="Read local container logs while infra.servers is configured",
)
@click.option(
    "--runtime",
    type=click.Choice(RUNTIME_KINDS),
    default="shell",
    show_default=True,
    help="Container runtime the service runs on",
)
@click.pass_obj
def logs(
    options: GlobalOptions,
    service: str,
    tail: int,
    allow_local_deploy: bool,
    runtime: str,
) -> None:
    """Show the last log lines of SERVICE's container.

    Example:

        convoy logs api --tail 50
    """
    with handle_command_errors():
        run_ctx = options.run_context(
            allow_local_deploy=allow_local_deploy, runtime_kind=runtime
        )
        report = asyncio.run(orchestrator.logs(run_ctx, service, tail))
        if options.json_output:
            emit_json(report)
            return
        click.secho(
            f"Logs for service: {report.service} ({report.container_id})", bold=True
        )
        click.echo(f"  Status: {report.status} on {report.target}")
        if not report.lines:
            click.echo(f"No logs available for service: {report.service}")
        for line in report.lines:
            click.echo(line)
