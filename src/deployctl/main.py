"""CLI main entry point."""

from __future__ import annotations

import json
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import click

from .application import DeployApplication
from .engine import PREVIOUS, Orchestrator, RunReport, RunStatus, exit_code_for
from .errors import ConcurrentRunInProgress, ConfigError, ExitCode, RollbackCancelled
from .formatters import (
    StepPrinter,
    print_certificate,
    print_config_yaml,
    print_failure,
    print_history,
    print_report_table,
    print_revisions,
    print_stack_status,
)
from .shared import configure_logging, log_level_for


@click.group()
@click.option("-c", "--config", type=click.Path(), help="Config file path")
@click.option("-v", "--verbose", count=True, help="Increase verbosity")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Append JSON log lines to this file")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: int, json_output: bool, log_file: str | None) -> None:
    """Idempotent deployment orchestration for a single host."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["json_output"] = json_output
    ctx.obj["log_file"] = log_file
    configure_logging(level=log_level_for(verbose, log_file), log_file=log_file)


def _load_app(
    ctx: click.Context,
    profile: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> DeployApplication:
    try:
        app = DeployApplication(ctx.obj["config_path"], profile=profile, overrides=overrides).initialize()
    except ConfigError as e:
        click.echo(f"Error: {e.message}", err=True)
        if e.remediation:
            click.echo(f"  {e.remediation}", err=True)
        sys.exit(ExitCode.ERROR)

    # Env file values are known now; keep them out of the logs as well
    configure_logging(
        level=log_level_for(ctx.obj["verbose"], ctx.obj["log_file"]),
        log_file=ctx.obj["log_file"],
        redact=app.report_log.redactor,
    )
    return app


@contextmanager
def _abort_on_signals(orchestrator: Orchestrator) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into an abort at the next step boundary."""

    def handle_signal(signum: int, frame: Any) -> None:
        if not orchestrator.abort_requested:
            click.echo("\n⚠ Abort requested, stopping after the current step", err=True)
        orchestrator.request_abort()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _emit_report(ctx: click.Context, app: DeployApplication, report: RunReport) -> None:
    if ctx.obj["json_output"]:
        click.echo(app.report_log.redactor(json.dumps(report.to_dict(), indent=2)))
        return
    if report.outcomes:
        click.echo()
        print_report_table(report)
    print_failure(report)


def _run_plan(ctx: click.Context, app: DeployApplication, plan_name: str) -> None:
    printer = None if ctx.obj["json_output"] else StepPrinter()
    orchestrator = app.orchestrator(
        on_transition=printer.on_transition if printer else None,
        on_outcome=printer.on_outcome if printer else None,
    )
    plan = {
        "deploy": app.deploy_plan,
        "provision": app.provision_plan,
        "ssl-setup": lambda: app.certificate_plan(schedule_renewal=True),
        "renew": app.certificate_plan,
    }[plan_name]()

    with _abort_on_signals(orchestrator):
        report = orchestrator.run(plan)

    _emit_report(ctx, app, report)
    code = exit_code_for(report)
    if code == ExitCode.SUCCESS and not ctx.obj["json_output"]:
        click.echo(f"\n✓ {plan_name} complete")
    sys.exit(int(code))


@cli.command()
@click.pass_context
def provision(ctx: click.Context) -> None:
    """Prepare a fresh host: packages, Docker, firewall, checkouts, env files."""
    app = _load_app(ctx)
    _run_plan(ctx, app, "provision")


@cli.command()
@click.option("--profile", default=None, help="Deployment profile (default, local-db, dev, ...)")
@click.option("--no-rollback", is_flag=True, help="Do not roll back automatically on failure")
@click.pass_context
def deploy(ctx: click.Context, profile: str | None, no_rollback: bool) -> None:
    """Sync code and (re)start the stack.

    Examples:

        # Deploy with an external database
        deployctl deploy

        # Deploy with the bundled database container
        deployctl deploy --profile local-db
    """
    overrides = {"rollback_on_failure": False} if no_rollback else None
    app = _load_app(ctx, profile=profile, overrides=overrides)
    _run_plan(ctx, app, "deploy")


def _parse_targets(values: tuple[str, ...]) -> str | dict[str, str]:
    if not values:
        return PREVIOUS
    if len(values) == 1 and "=" not in values[0]:
        return values[0]
    targets = {}
    for value in values:
        component, sep, ref = value.partition("=")
        if not sep or not component or not ref:
            raise click.BadParameter(
                f"'{value}': use a single REF or COMPONENT=REF pairs", param_hint="--to"
            )
        targets[component] = ref
    return targets


@cli.command()
@click.option(
    "--to",
    "targets",
    multiple=True,
    help="Target revision: REF for every component, or COMPONENT=REF (repeatable)",
)
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def rollback(ctx: click.Context, targets: tuple[str, ...], yes: bool) -> None:
    """Roll components back to an earlier revision."""
    app = _load_app(ctx)
    controller = app.rollback_controller(operator=True)

    if not ctx.obj["json_output"]:
        click.echo("\n📋 Recorded revisions")
        print_revisions(controller.list_revisions())
        click.echo()

    if not targets and not yes:
        chosen = click.prompt("Roll back to (commit, tag or 'previous')", default=PREVIOUS)
        targets = (chosen,)
    target = _parse_targets(targets)

    def confirm(resolved: dict[str, str]) -> bool:
        if not resolved:
            return True
        click.echo("Rollback plan:")
        for component, ref in resolved.items():
            click.echo(f"  {component} -> {ref}")
        return yes or click.confirm("Proceed with rollback?", default=False)

    try:
        report = controller.rollback(target, confirm=confirm)
    except RollbackCancelled:
        click.echo("Rollback cancelled")
        sys.exit(ExitCode.SUCCESS)
    except ConcurrentRunInProgress as e:
        click.echo(f"✗ {e.message}", err=True)
        if e.remediation:
            click.echo(f"  {e.remediation}", err=True)
        sys.exit(ExitCode.LOCKED)

    _emit_report(ctx, app, report)
    if report.status != RunStatus.ROLLED_BACK:
        sys.exit(ExitCode.ROLLBACK_FAILED)
    if not ctx.obj["json_output"]:
        click.echo()
        print_stack_status(app.runtime.status())
        click.echo("\n✓ Rollback complete")


@cli.command("ssl-setup")
@click.argument("domain")
@click.argument("email")
@click.pass_context
def ssl_setup(ctx: click.Context, domain: str, email: str) -> None:
    """Obtain a certificate for DOMAIN and schedule its renewal."""
    app = _load_app(ctx, overrides={"domain": domain, "email": email})
    _run_plan(ctx, app, "ssl-setup")


@cli.command()
@click.option("--domain", default=None, help="Certificate domain (default: from config)")
@click.option("--email", default=None, help="Contact email if a certificate must be issued")
@click.pass_context
def renew(ctx: click.Context, domain: str | None, email: str | None) -> None:
    """Renew the certificate if it is close to expiry (run daily by cron)."""
    overrides = {key: value for key, value in (("domain", domain), ("email", email)) if value}
    app = _load_app(ctx, overrides=overrides)
    _run_plan(ctx, app, "renew")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show containers, active revisions and certificate expiry."""
    app = _load_app(ctx)
    stack = app.runtime.status()
    revisions = app.rollback_controller().list_revisions()
    certificate = app.certificates.observe(app.config.domain) if app.config.domain else None

    if ctx.obj["json_output"]:
        data = {
            "stack": stack.state.value,
            "containers": [
                {"name": c.name, "service": c.service, "state": c.state} for c in stack.containers
            ],
            "revisions": {r.component: {"active": r.active, "previous": r.previous} for r in revisions},
            "certificate": (
                {
                    "domain": certificate.domain,
                    "not_after": certificate.not_after.isoformat() if certificate.not_after else None,
                }
                if certificate
                else None
            ),
        }
        click.echo(json.dumps(data, indent=2))
        return

    print_stack_status(stack)
    print_revisions(revisions)
    if certificate:
        click.echo("\nCertificate:")
        print_certificate(certificate)


@cli.command()
@click.option("--limit", default=10, type=int, help="Number of runs to show")
@click.pass_context
def history(ctx: click.Context, limit: int) -> None:
    """Show recent run reports."""
    app = _load_app(ctx)
    reports = app.report_log.recent(limit)
    if ctx.obj["json_output"]:
        click.echo(json.dumps(reports, indent=2))
    else:
        print_history(reports)


@cli.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
@click.option("--profile", default=None, help="Resolve this deployment profile")
@click.pass_context
def config_show(ctx: click.Context, profile: str | None) -> None:
    """Show current configuration."""
    app = _load_app(ctx, profile=profile)
    data = app.config.to_dict()
    data["active_profile"] = app.profile.name

    if ctx.obj["json_output"]:
        click.echo(json.dumps({"config": data, "sources": app.config.sources}, indent=2, default=str))
        return
    click.echo("deployctl configuration")
    click.echo(f"Source: {app.config_source or 'defaults'}\n")
    print_config_yaml(data, app.config.sources)


@cli.command()
def version() -> None:
    """Show version information."""
    from . import __version__

    click.echo(f"deployctl version {__version__}")


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
