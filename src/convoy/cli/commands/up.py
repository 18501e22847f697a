"""Click commands for provisioning and rolling out services."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from typing import Any

import click

from convoy.cli.models import GlobalOptions
from convoy.cli.output import emit_json, handle_command_errors
from convoy.deploy import orchestrator
from convoy.deploy.orchestrator import UpReport
from convoy.lib.errors import RolloutFailedError
from convoy.runtime.containers import RUNTIME_KINDS

_ACTION_COLORS = {
    "created": "green",
    "deployed": "green",
    "unchanged": None,
    "planned": "yellow",
    "plan-create": "yellow",
    "skipped": "yellow",
    "failed": "red",
}


def _render(report: UpReport, options: GlobalOptions) -> None:
    if options.json_output:
        emit_json(report)
        return

    prefix = "[DRY RUN] " if report.dry_run else ""
    for server in report.servers:
        line = f"{prefix}server {server.name}: {server.action}"
        if server.public_ip:
            line += f" ({server.public_ip})"
        click.secho(line, fg=_ACTION_COLORS.get(server.action))
    for service in report.services:
        line = f"{prefix}service {service.name}: {service.action}"
        if service.target:
            line += f" on {service.target}"
        click.secho(line, fg=_ACTION_COLORS.get(service.action))
        if service.detail and service.action in ("failed", "skipped"):
            click.echo(f"  {service.detail}")
    for hook in report.hooks:
        for record in hook.records:
            state = "skipped" if record.skipped else ("ok" if record.ok else "failed")
            click.echo(f"{prefix}script {record.script}@{record.server}: {state}")

    if report.failed_services:
        click.secho(
            f"{len(report.failed_services)} service(s) failed", fg="red", err=True
        )
    else:
        click.secho(f"{prefix}Rollout of {report.project} complete", fg="green")


def _run(
    options: GlobalOptions, start: Callable[[], Coroutine[Any, Any, UpReport]]
) -> None:
    with handle_command_errors():
        try:
            report = asyncio.run(start())
        except RolloutFailedError as e:
            if isinstance(e.report, UpReport):
                _render(e.report, options)
            raise
        _render(report, options)


_runtime_option = click.option(
    "--runtime",
    type=click.Choice(RUNTIME_KINDS),
    default="shell",
    show_default=True,
    help="Container runtime used to deploy",
)
_allow_local_option = click.option(
    "--allow-local-deploy",
    is_flag=True,
    help="Allow local deploys while infra.servers is configured",
)
_dry_run_option = click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be done without executing",
)


@click.command(name="up")
@_dry_run_option
@_allow_local_option
@_runtime_option
@click.pass_obj
def up(
    options: GlobalOptions, dry_run: bool, allow_local_deploy: bool, runtime: str
) -> None:
    """Provision servers, run hooks and deploy every service.

    Example:

        convoy up --dry-run

        convoy --env staging up
    """

    def _start() -> Coroutine[Any, Any, UpReport]:
        run_ctx = options.run_context(
            dry_run=dry_run,
            allow_local_deploy=allow_local_deploy,
            runtime_kind=runtime,
        )
        return orchestrator.up(run_ctx)

    _run(options, _start)


@click.command(name="deploy")
@click.argument("service", default="all", required=False)
@_dry_run_option
@_allow_local_option
@_runtime_option
@click.pass_obj
def deploy(
    options: GlobalOptions,
    service: str,
    dry_run: bool,
    allow_local_deploy: bool,
    runtime: str,
) -> None:
    """Deploy SERVICE and its dependencies (default: all services).

    Each service is held to its healthcheck and rolled back to the previous
    image when the check fails.

    Example:

        convoy deploy api

        convoy deploy --allow-local-deploy --runtime docker
    """

    def _start() -> Coroutine[Any, Any, UpReport]:
        run_ctx = options.run_context(
            dry_run=dry_run,
            allow_local_deploy=allow_local_deploy,
            runtime_kind=runtime,
        )
        return orchestrator.deploy(run_ctx, service)

    _run(options, _start)
