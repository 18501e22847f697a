"""Click command for checking configuration and credentials."""

from __future__ import annotations

import asyncio

import click

from convoy.cli.models import GlobalOptions
from convoy.cli.output import emit_json, handle_command_errors
from convoy.deploy import orchestrator
from convoy.lib.errors import PreflightError


@click.command(name="doctor")
@click.pass_obj
def doctor(options: GlobalOptions) -> None:
    """Check key files, provider requests and services without changing anything.

    Exits with status 2 when blocking issues are found.
    """
    with handle_command_errors():
        report = asyncio.run(orchestrator.doctor(options.run_context()))

        if options.json_output:
            emit_json(
                {
                    "ok": report.ok,
                    "issues": report.issues,
                    "warnings": report.warnings,
                }
            )
        elif report.ok:
            click.secho("doctor: no blocking issues found", fg="green")
        else:
            click.secho("doctor found issues:", fg="red")
            for issue in report.issues:
                click.echo(f"- {issue}")
        if report.warnings and not options.json_output:
            click.secho("doctor warnings:", fg="yellow")
            for warning in report.warnings:
                click.echo(f"- {warning}")

        if not report.ok:
            raise PreflightError("doctor", f"{len(report.issues)} blocking issue(s)")
