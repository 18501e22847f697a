"""Click command for observing servers and services."""

from __future__ import annotations

import asyncio

import click

from convoy.cli.models import GlobalOptions
from convoy.cli.output import emit_json, handle_command_errors
from convoy.deploy import orchestrator
from convoy.deploy.orchestrator import StatusReport
from convoy.models.state import HealthState

_HEALTH_COLORS = {
    HealthState.HEALTHY: "green",
    HealthState.DEGRADED: "yellow",
    HealthState.UNHEALTHY: "red",
    HealthState.UNKNOWN: None,
}


def _render(report: StatusReport) -> None:
    click.secho(f"Project: {report.project}", bold=True)
    click.secho("Servers:", bold=True)
    if not report.servers:
        click.echo("  (none)")
    for name, server in sorted(report.servers.items()):
        click.secho(
            f"  {name:<20} {server.health.value:<10} "
            f"{server.last_status or '-':<12} {server.public_ip or '-'}",
            fg=_HEALTH_COLORS[server.health],
        )
        if server.last_error:
            click.echo(f"    error: {server.last_error}")

    click.secho("Services:", bold=True)
    if not report.services:
        click.echo("  (none)")
    for name, service in sorted(report.services.items()):
        click.secho(
            f"  {name:<20} {service.health.value:<10} "
            f"{service.last_status or '-':<12} {service.image}",
            fg=_HEALTH_COLORS[service.health],
        )
        if service.last_error:
            click.echo(f"    error: {service.last_error}")

    drift = report.drift
    if drift.has_drift:
        click.secho("Drift:", fg="yellow", bold=True)
        for label, names in (
            ("servers missing from cache", drift.missing_servers_in_cache),
            ("servers only in cache", drift.extra_servers_in_cache),
            ("services missing from cache", drift.missing_services_in_cache),
            ("services only in cache", drift.extra_services_in_cache),
        ):
            if names:
                click.echo(f"  {label}: {', '.join(names)}")


@click.command(name="status")
@click.option(
    "--allow-local-deploy",
    is_flag=True,
    help="Inspect local containers while infra.servers is configured",
)
@click.pass_obj
def status(options: GlobalOptions, allow_local_deploy: bool) -> None:
    """Re-observe servers and services and refresh cached health."""
    with handle_command_errors():
        run_ctx = options.run_context(allow_local_deploy=allow_local_deploy)
        report = asyncio.run(orchestrator.status(run_ctx))
        if options.json_output:
            emit_json(report)
        else:
            _render(report)
