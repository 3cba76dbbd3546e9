"""Deployment orchestrator.

Drives a DeploymentPlan through a forward-only state machine:

    Idle -> Preflighting -> Provisioning -> Syncing -> ConfigValidating
         -> ContainersStarting -> HealthChecking -> CertReconciling
         -> CleaningUp -> Done

States a plan has no steps for are skipped; a state is never re-entered.
Any non-terminal state may fall through to Failing, which ends in
RolledBack or ReportedFailure. The run lock is held from before
Preflighting until the report has been written.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from enum import Enum

from ..collaborators import ComposeRuntime, DockerEngine
from ..config import DeployConfig
from ..errors import (
    ActionFailed,
    CertificateError,
    ConcurrentRunInProgress,
    DeployError,
    ExitCode,
    HealthCheckTimeout,
    InsufficientDiskSpace,
    PlanError,
    PreflightMissing,
    RunAborted,
)
from ..shared.logging import get_logger
from .certificates import CertAction, CertificateManager
from .health import ContainerHealthPoller
from .history import ReportLog
from .lock import RunLock
from .models import (
    DeploymentPlan,
    RunContext,
    RunReport,
    RunStatus,
    Step,
    StepKind,
    StepOutcome,
    StepStatus,
)
from .preflight import PreflightChecker, PreflightResult
from .rollback import RollbackController
from .runner import ActionRunner

logger = get_logger(__name__)


class OrchestratorState(Enum):
    IDLE = "idle"
    PREFLIGHTING = "preflighting"
    PROVISIONING = "provisioning"
    SYNCING = "syncing"
    CONFIG_VALIDATING = "config_validating"
    CONTAINERS_STARTING = "containers_starting"
    HEALTH_CHECKING = "health_checking"
    CERT_RECONCILING = "cert_reconciling"
    CLEANING_UP = "cleaning_up"
    DONE = "done"
    FAILING = "failing"
    ROLLED_BACK = "rolled_back"
    REPORTED_FAILURE = "reported_failure"


FORWARD_ORDER = (
    OrchestratorState.IDLE,
    OrchestratorState.PREFLIGHTING,
    OrchestratorState.PROVISIONING,
    OrchestratorState.SYNCING,
    OrchestratorState.CONFIG_VALIDATING,
    OrchestratorState.CONTAINERS_STARTING,
    OrchestratorState.HEALTH_CHECKING,
    OrchestratorState.CERT_RECONCILING,
    OrchestratorState.CLEANING_UP,
    OrchestratorState.DONE,
)

TERMINAL_STATES = frozenset(
    {OrchestratorState.DONE, OrchestratorState.ROLLED_BACK, OrchestratorState.REPORTED_FAILURE}
)


def _allowed_transitions() -> dict[OrchestratorState, frozenset[OrchestratorState]]:
    allowed = {}
    for index, state in enumerate(FORWARD_ORDER[:-1]):
        allowed[state] = frozenset(FORWARD_ORDER[index + 1 :]) | {OrchestratorState.FAILING}
    allowed[OrchestratorState.FAILING] = frozenset(
        {OrchestratorState.ROLLED_BACK, OrchestratorState.REPORTED_FAILURE}
    )
    return allowed


ALLOWED_TRANSITIONS = _allowed_transitions()

STATE_FOR_KIND = {
    StepKind.PREFLIGHT: OrchestratorState.PREFLIGHTING,
    StepKind.PROVISION: OrchestratorState.PROVISIONING,
    StepKind.SYNC: OrchestratorState.SYNCING,
    StepKind.CONFIG_CHECK: OrchestratorState.CONFIG_VALIDATING,
    StepKind.CONTAINER_UP: OrchestratorState.CONTAINERS_STARTING,
    StepKind.HEALTH_CHECK: OrchestratorState.HEALTH_CHECKING,
    StepKind.CERT_RECONCILE: OrchestratorState.CERT_RECONCILING,
    StepKind.CLEANUP: OrchestratorState.CLEANING_UP,
}

ERROR_FOR_KIND: dict[StepKind, type[DeployError]] = {
    StepKind.PREFLIGHT: PreflightMissing,
    StepKind.HEALTH_CHECK: HealthCheckTimeout,
    StepKind.CERT_RECONCILE: CertificateError,
}


class InvalidStateTransition(Exception):
    pass


def validate_plan_order(plan: DeploymentPlan) -> None:
    """Raise PlanError if the plan would have to re-enter an earlier state."""
    position = 0
    for step in plan:
        index = FORWARD_ORDER.index(STATE_FOR_KIND[step.kind])
        if index < position:
            raise PlanError(
                message=(
                    f"Step '{step.name}' ({step.kind.value}) comes after a later stage "
                    f"in plan '{plan.name}'"
                )
            )
        position = index


def exit_code_for(report: RunReport) -> ExitCode:
    """Map a finalized deploy/provision/certificate report to the process exit code."""
    if report.status == RunStatus.SUCCESS:
        return ExitCode.SUCCESS
    if isinstance(report.error, ConcurrentRunInProgress):
        return ExitCode.LOCKED
    if isinstance(report.error, PreflightMissing):
        return ExitCode.PREFLIGHT_FAILED
    if report.rollback_attempted:
        return ExitCode.ROLLED_BACK if report.rollback_succeeded else ExitCode.ROLLBACK_FAILED
    if isinstance(report.error, PlanError):
        return ExitCode.ERROR
    return ExitCode.DEPLOY_FAILED


class Orchestrator:
    """Run deployment plans under the run lock."""

    def __init__(
        self,
        config: DeployConfig,
        runtime: ComposeRuntime,
        engine: DockerEngine,
        lock: RunLock,
        certificates: CertificateManager | None = None,
        rollback: RollbackController | None = None,
        report_log: ReportLog | None = None,
        runner: ActionRunner | None = None,
        on_transition: Callable[[OrchestratorState, OrchestratorState], None] | None = None,
        on_outcome: Callable[[StepOutcome], None] | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Deployment configuration, fixed for the lifetime of a run.
            runtime: Compose runtime of the stack being deployed.
            engine: Docker engine (disk usage and cleanup).
            lock: Exclusive run lock.
            certificates: Certificate manager for CERT_RECONCILE steps.
            rollback: Controller used on the failure path.
            report_log: Where finalized reports are appended.
            runner: Runner for steps that carry an action.
            on_transition: Called with (old, new) on every state change.
            on_outcome: Called with every step outcome as it is recorded.
        """
        self.config = config
        self.runtime = runtime
        self.engine = engine
        self.lock = lock
        self.certificates = certificates
        self.rollback = rollback
        self.report_log = report_log
        self.runner = runner or ActionRunner()
        self.on_transition = on_transition
        self.on_outcome = on_outcome
        self.state = OrchestratorState.IDLE
        self.last_preflight: PreflightResult | None = None
        self._abort = threading.Event()

    def request_abort(self) -> None:
        """Stop the run at the next step boundary. Safe to call from a signal handler."""
        self._abort.set()

    @property
    def abort_requested(self) -> bool:
        return self._abort.is_set()

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def _transition(self, new_state: OrchestratorState, report: RunReport) -> None:
        current = self.state
        if current == new_state:
            return
        if new_state not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidStateTransition(f"Cannot transition from {current.value} to {new_state.value}")
        self.state = new_state
        report.states.append(new_state.value)
        logger.info("orchestrator.transition", run_id=report.run_id, old=current.value, new=new_state.value)
        if self.on_transition:
            self.on_transition(current, new_state)

    def _record(self, outcome: StepOutcome, report: RunReport) -> None:
        report.append(outcome)
        if self.on_outcome:
            self.on_outcome(outcome)

    def run(self, plan: DeploymentPlan) -> RunReport:
        """Execute `plan` and return its finalized report.

        Errors never escape: every failure ends up in the report, which is
        appended to the report log unless the run lock could not be taken.
        """
        report = RunReport(command=plan.name.split(":")[0], plan=plan.name)
        self.state = OrchestratorState.IDLE
        log = logger.bind(run_id=report.run_id, plan=plan.name)

        try:
            validate_plan_order(plan)
            self.lock.acquire()
        except (PlanError, ConcurrentRunInProgress) as e:
            log.error("orchestrator.not_started", code=e.code, error=e.message)
            report.error = e
            return report.finalize(RunStatus.PARTIAL_FAILURE)

        try:
            ctx = RunContext()
            try:
                self._run_steps(plan, ctx, report)
            except DeployError as e:
                self._fail(e, plan, ctx, report)
            except Exception as e:
                log.exception("orchestrator.unexpected_error")
                self._fail(
                    ActionFailed(message=f"Unexpected error: {type(e).__name__}: {e}"),
                    plan,
                    ctx,
                    report,
                )
            else:
                self._transition(OrchestratorState.DONE, report)
                report.finalize(RunStatus.SUCCESS)
                log.info("orchestrator.done", outcomes=len(report.outcomes))

            if self.report_log is not None:
                self.report_log.append(report)
        finally:
            self.lock.release()
        return report

    def _run_steps(self, plan: DeploymentPlan, ctx: RunContext, report: RunReport) -> None:
        disk_checked = False
        for step in plan:
            if self._abort.is_set():
                raise RunAborted(data={"next_step": step.name})

            if step.kind == StepKind.CONTAINER_UP and not disk_checked:
                disk_checked = True
                self._guard_disk(report)

            self._transition(STATE_FOR_KIND[step.kind], report)
            outcome = self._execute(step, plan, ctx, report)
            self._record(outcome, report)

            if not outcome.failed:
                continue
            if step.optional:
                report.warnings.append(f"{step.name}: {outcome.reason}")
                logger.warning("orchestrator.optional_step_failed", step=step.name, reason=outcome.reason)
                continue
            report.failed_step = step.name
            raise self._error_for(step, outcome)

    def _execute(self, step: Step, plan: DeploymentPlan, ctx: RunContext, report: RunReport) -> StepOutcome:
        if step.action is not None:
            return self.runner.apply(step, ctx)
        if step.kind == StepKind.PREFLIGHT:
            return self._preflight(step, plan)
        if step.kind == StepKind.HEALTH_CHECK:
            return self._health_check(step)
        if step.kind == StepKind.CERT_RECONCILE:
            return self._reconcile_certificate(step, report)
        return self.runner.apply(step, ctx)

    def _error_for(self, step: Step, outcome: StepOutcome) -> DeployError:
        error_class = ERROR_FOR_KIND.get(step.kind, ActionFailed)
        kwargs = {"message": f"{step.name}: {outcome.reason or 'failed'}", "data": {"step": step.name}}
        if outcome.detail:
            kwargs["data"]["detail"] = outcome.detail
        if outcome.remediation:
            kwargs["remediation"] = outcome.remediation
        if step.kind == StepKind.PREFLIGHT and self.last_preflight is not None:
            kwargs["data"]["missing"] = [r.name for r in self.last_preflight.missing]
        return error_class(**kwargs)

    # ── Orchestrator-owned steps ───────────────────────────────

    def _preflight(self, step: Step, plan: DeploymentPlan) -> StepOutcome:
        result = PreflightChecker(list(plan.requirements)).check()
        self.last_preflight = result
        if result.satisfied:
            return StepOutcome(step.name, step.kind, StepStatus.SATISFIED)
        return StepOutcome(
            step.name,
            step.kind,
            StepStatus.FAILED,
            reason=f"{len(result.missing)} of {result.checked} requirements missing",
            detail=result.describe(),
            remediation=result.remediation() or None,
        )

    def _health_check(self, step: Step) -> StepOutcome:
        poller = ContainerHealthPoller(
            self.runtime,
            expected=self.config.expected_containers,
            timeout_seconds=self.config.health_timeout,
            interval_seconds=self.config.health_interval,
            url=self.config.health_url,
        )

        def on_attempt(attempt: int, running: int, error: str | None) -> None:
            logger.info("health.attempt", attempt=attempt, running=running, error=error)

        result = poller.wait_for_healthy_sync(on_attempt)
        if result.healthy:
            return StepOutcome(step.name, step.kind, StepStatus.SATISFIED, attempts=result.attempts)
        return StepOutcome(
            step.name,
            step.kind,
            StepStatus.FAILED,
            reason=result.error,
            detail=f"{result.running}/{result.expected} containers running",
            remediation=HealthCheckTimeout.remediation,
            attempts=result.attempts,
        )

    def _reconcile_certificate(self, step: Step, report: RunReport) -> StepOutcome:
        if not self.config.domain:
            return StepOutcome(
                step.name, step.kind, StepStatus.SKIPPED, reason="no certificate domain configured"
            )
        if self.certificates is None:
            return StepOutcome(
                step.name, step.kind, StepStatus.SKIPPED, reason="certificate management not available"
            )

        result = self.certificates.reconcile(self.config.domain, self.config.email)
        report.warnings.extend(result.warnings)
        if result.action == CertAction.NONE_NEEDED:
            remaining = result.state.remaining_days()
            return StepOutcome(
                step.name,
                step.kind,
                StepStatus.SATISFIED,
                reason=f"valid for {remaining:.0f} more days" if remaining is not None else None,
            )
        if result.action in (CertAction.ISSUED, CertAction.RENEWED):
            return StepOutcome(step.name, step.kind, StepStatus.APPLIED, reason=result.action.value, attempts=1)
        return StepOutcome(
            step.name,
            step.kind,
            StepStatus.FAILED,
            reason=f"certificate for {self.config.domain} not issued or renewed",
            detail=result.error,
            remediation=CertificateError.remediation,
        )

    def _guard_disk(self, report: RunReport) -> None:
        """Refuse to start containers while the disk is nearly full."""
        threshold = self.config.disk_threshold
        usage = self.engine.disk_usage_percent(self.config.disk_path)
        if usage <= threshold:
            return

        log = logger.bind(run_id=report.run_id, threshold=threshold)
        log.warning("disk.pressure", usage=round(usage, 1))
        pruned = self.engine.prune_system()
        after = self.engine.disk_usage_percent(self.config.disk_path)
        self._record(
            StepOutcome(
                "disk-cleanup",
                StepKind.CLEANUP,
                StepStatus.APPLIED if pruned.ok else StepStatus.FAILED,
                reason=f"disk usage {usage:.0f}% -> {after:.0f}% (threshold {threshold:.0f}%)",
                detail=None if pruned.ok else pruned.describe(),
                attempts=1,
            ),
            report,
        )
        if after > threshold:
            report.failed_step = "disk-cleanup"
            raise InsufficientDiskSpace(
                message=f"Disk usage {after:.0f}% is above {threshold:.0f}% after cleanup",
                data={"before": round(usage, 1), "after": round(after, 1), "threshold": threshold},
            )
        log.info("disk.recovered", usage=round(after, 1))

    # ── Failure path ───────────────────────────────────────────

    def _capture_logs(self) -> dict[str, str]:
        logs = {}
        for container in self.runtime.ps():
            logs[container.name] = self.runtime.logs(container.service, tail=self.config.log_tail_lines)
        return logs

    def _rollback_eligible(self, error: DeployError, ctx: RunContext) -> bool:
        return (
            self.config.rollback_on_failure
            and error.rollback_eligible
            and bool(ctx.changed)
            and self.rollback is not None
        )

    def _undo_applied(self, plan: DeploymentPlan, ctx: RunContext, report: RunReport) -> None:
        """Run rollback actions of applied steps, most recent first."""
        steps = {step.name: step for step in plan}
        for outcome in reversed(list(report.outcomes)):
            step = steps.get(outcome.step)
            if step is None or step.rollback_action is None or outcome.status != StepStatus.APPLIED:
                continue
            undo = self.runner.run_action(f"undo-{step.name}", step.kind, step.rollback_action, ctx)
            self._record(undo, report)

    def _fail(self, error: DeployError, plan: DeploymentPlan, ctx: RunContext, report: RunReport) -> None:
        log = logger.bind(run_id=report.run_id, step=report.failed_step, code=error.code)
        self._transition(OrchestratorState.FAILING, report)
        log.error("orchestrator.failing", error=error.message)
        report.error = error
        report.container_logs = self._capture_logs()

        if not self._rollback_eligible(error, ctx):
            self._transition(OrchestratorState.REPORTED_FAILURE, report)
            report.finalize(RunStatus.PARTIAL_FAILURE)
            return

        report.rollback_attempted = True
        self._undo_applied(plan, ctx, report)

        targets = {name: before for name, (before, _after) in ctx.changed.items() if before}
        log.warning("orchestrator.rolling_back", targets=targets)
        try:
            rollback_report = self.rollback.rollback(targets, automatic=True)
        except Exception as e:
            log.exception("orchestrator.rollback_error")
            report.warnings.append(f"Rollback raised {type(e).__name__}: {e}")
            report.rollback_succeeded = False
        else:
            report.rollback_report = rollback_report
            report.rollback_succeeded = rollback_report.status == RunStatus.ROLLED_BACK
            report.warnings.extend(rollback_report.warnings)

        if report.rollback_succeeded:
            self._transition(OrchestratorState.ROLLED_BACK, report)
            report.finalize(RunStatus.ROLLED_BACK)
        else:
            self._transition(OrchestratorState.REPORTED_FAILURE, report)
            report.finalize(RunStatus.PARTIAL_FAILURE)
