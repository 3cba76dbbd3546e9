"""CLI output formatting helpers."""

from __future__ import annotations

from typing import Any

import click
import yaml
from rich.console import Console
from rich.table import Table

from .collaborators import StackStatus
from .engine import (
    CertificateState,
    ComponentRevisions,
    OrchestratorState,
    RunReport,
    StepOutcome,
    StepStatus,
)

console = Console()

STATUS_MARKS = {
    StepStatus.SATISFIED: "✓",
    StepStatus.APPLIED: "✓",
    StepStatus.SKIPPED: "⚠",
    StepStatus.FAILED: "✗",
}

STATE_TITLES = {
    OrchestratorState.PREFLIGHTING: "Preflight",
    OrchestratorState.PROVISIONING: "Provision Host",
    OrchestratorState.SYNCING: "Sync Code",
    OrchestratorState.CONFIG_VALIDATING: "Validate Configuration",
    OrchestratorState.CONTAINERS_STARTING: "Start Containers",
    OrchestratorState.HEALTH_CHECKING: "Health Check",
    OrchestratorState.CERT_RECONCILING: "Certificates",
    OrchestratorState.CLEANING_UP: "Cleanup",
    OrchestratorState.FAILING: "Failure Handling",
}


class StepPrinter:
    """Print numbered stage headings and one status line per step."""

    def __init__(self) -> None:
        self.stage = 0

    def on_transition(self, old: OrchestratorState, new: OrchestratorState) -> None:
        title = STATE_TITLES.get(new)
        if title is None:
            return
        if new == OrchestratorState.FAILING:
            click.echo(f"\n📋 {title}\n")
            return
        self.stage += 1
        click.echo(f"\n📋 Step {self.stage}: {title}\n")

    def on_outcome(self, outcome: StepOutcome) -> None:
        print_outcome(outcome)


def print_outcome(outcome: StepOutcome) -> None:
    """Print a single `✓ / ⚠ / ✗` status line."""
    mark = STATUS_MARKS[outcome.status]
    line = f"  {mark} {outcome.step}: {outcome.status.value}"
    if outcome.reason:
        line += f" ({outcome.reason})"
    click.echo(line, err=outcome.failed)


def print_report_table(report: RunReport) -> None:
    """Render the step outcomes of a report as a table."""
    table = Table(title=f"{report.command} {report.run_id} - {report.status.value}")
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Reason")

    for index, outcome in enumerate(report.outcomes, 1):
        table.add_row(
            str(index),
            outcome.step,
            outcome.kind.value,
            f"{STATUS_MARKS[outcome.status]} {outcome.status.value}",
            str(outcome.attempts or ""),
            outcome.reason or "",
        )
    console.print(table)

    counts = ", ".join(
        f"{report.count(status)} {status.value}" for status in StepStatus if report.count(status)
    )
    click.echo(f"\n{len(report.outcomes)} steps: {counts or 'none'}")


def print_failure(report: RunReport) -> None:
    """Print failing step, diagnostic and remediation for a failed run."""
    error = report.error
    if error is None:
        return

    click.echo("", err=True)
    click.echo(f"✗ {error.message}", err=True)
    if report.failed_step:
        click.echo(f"  Step: {report.failed_step}", err=True)
    detail = error.data.get("detail")
    if detail:
        click.echo("  Diagnostic:", err=True)
        for line in str(detail).splitlines():
            click.echo(f"    {line}", err=True)
    for name in error.data.get("missing", []):
        click.echo(f"    - {name}", err=True)
    if error.remediation:
        click.echo("  Remediation:", err=True)
        for line in error.remediation.splitlines():
            click.echo(f"    {line}", err=True)

    for container, output in report.container_logs.items():
        lines = output.splitlines()[-10:]
        if not lines:
            continue
        click.echo(f"\n  Last output of {container}:", err=True)
        for line in lines:
            click.echo(f"    {line}", err=True)

    if report.rollback_attempted:
        if report.rollback_succeeded:
            click.echo("\n⚠ Rolled back to the previous revisions", err=True)
        else:
            click.echo("\n✗ Rollback failed; the host needs manual attention", err=True)
            rollback = report.rollback_report
            if rollback is not None and rollback.error is not None:
                click.echo(f"  {rollback.error.message}", err=True)

    for warning in report.warnings:
        click.echo(f"  ⚠ {warning}", err=True)


def print_config_yaml(data: dict[str, Any], sources: dict[str, str] | None = None) -> None:
    """Print config as YAML, followed by values that did not come from defaults.

    Args:
        data: Configuration data
        sources: Mapping of key to where its value came from
    """
    click.echo(yaml.dump(data, default_flow_style=False, sort_keys=False))
    if sources:
        click.echo("Overridden values:")
        for key, source in sorted(sources.items()):
            click.echo(f"  {key}: {source}")


def print_stack_status(status: StackStatus) -> None:
    click.echo(f"Stack state: {status.state.value}")
    if status.message:
        click.echo(f"  {status.message}")
    for container in status.containers:
        mark = "✓" if container.running else "✗"
        click.echo(f"  {mark} {container.name} ({container.state})")


def print_revisions(listing: list[ComponentRevisions]) -> None:
    """Print active and recent revisions per component."""
    if not listing:
        click.echo("No component checkouts found")
        return
    for entry in listing:
        click.echo(f"\n{entry.component}:")
        click.echo(f"  Active:   {entry.active or 'unknown'}")
        click.echo(f"  Previous: {entry.previous or 'none recorded'}")
        if entry.recent_commits:
            click.echo("  Recent commits:")
            for line in entry.recent_commits:
                click.echo(f"    {line}")


def print_certificate(state: CertificateState) -> None:
    if not state.present:
        click.echo(f"  ✗ {state.domain}: no certificate")
        return
    remaining = state.remaining_days()
    mark = "✓" if remaining > 0 else "✗"
    click.echo(f"  {mark} {state.domain}: expires {state.not_after:%Y-%m-%d} ({remaining:.0f} days)")


def print_history(reports: list[dict[str, Any]]) -> None:
    """Render persisted run reports, newest last."""
    if not reports:
        click.echo("No runs recorded")
        return
    table = Table(title="Recent runs")
    table.add_column("Run")
    table.add_column("Command")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Failed step")
    table.add_column("Error")
    for report in reports:
        error = report.get("error") or {}
        table.add_row(
            report.get("run_id", "?"),
            report.get("plan") or report.get("command", "?"),
            (report.get("started_at") or "")[:19],
            report.get("status", "?"),
            report.get("failed_step") or "",
            error.get("message", ""),
        )
    console.print(table)
