"""Rollback of component checkouts to earlier revisions.

Each tracked component is rolled back independently: a target that does not
exist in one component's history is reported as a warning and the other
components still roll back. Rolling back only moves the active pointer in
the revision history; no recorded revision is ever removed.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from ..collaborators import ComposeRuntime, GitClient
from ..config import DeployConfig, DeploymentProfile
from ..errors import ActionFailed, RollbackCancelled
from ..shared.logging import get_logger
from .actions import CheckoutRevision, RestartContainers, StopContainers
from .history import ReportLog, RevisionHistory
from .lock import RunLock
from .models import Revision, RunContext, RunReport, RunStatus, StepKind, StepOutcome, StepStatus
from .runner import ActionRunner

logger = get_logger(__name__)

PREVIOUS = "previous"

RollbackTarget = str | Revision | Iterable[Revision] | Mapping[str, str]


@dataclass
class ComponentRevisions:
    """Revision summary for one component, shown before a rollback."""

    component: str
    active: str | None = None
    previous: str | None = None
    recorded: list[str] = field(default_factory=list)
    recent_commits: list[str] = field(default_factory=list)


class RollbackController:
    """Roll tracked components back to earlier revisions."""

    def __init__(
        self,
        config: DeployConfig,
        git: GitClient,
        runtime: ComposeRuntime,
        history: RevisionHistory,
        runner: ActionRunner | None = None,
        report_log: ReportLog | None = None,
        lock: RunLock | None = None,
        profile: DeploymentProfile | None = None,
    ):
        """Initialize the controller.

        Args:
            config: Deployment configuration (components, expected containers).
            git: Version control client.
            runtime: Compose runtime of the deployed stack.
            history: Recorded revisions per component.
            runner: Action runner used for every mutating step.
            report_log: Where operator-initiated rollback reports are appended.
            lock: Run lock taken for operator-initiated rollbacks.
            profile: Active deployment profile; containers restart the way it deploys them.
        """
        self.config = config
        self.git = git
        self.runtime = runtime
        self.history = history
        self.runner = runner or ActionRunner()
        self.report_log = report_log
        self.lock = lock
        self.profile = profile or config.profile(None)

    def list_revisions(self, count: int = 5) -> list[ComponentRevisions]:
        """Recorded and recent revisions of every component with a checkout."""
        listing = []
        for component in self.config.components:
            if not self.git.is_repository(component.path):
                continue
            recorded = [r.commit_ref for r in self.history.revisions(component.name)]
            listing.append(
                ComponentRevisions(
                    component=component.name,
                    active=self.history.active(component.name) or self.git.head(component.path),
                    previous=self.history.previous(component.name),
                    recorded=recorded[-count:],
                    recent_commits=self.git.log(component.path, count),
                )
            )
        return listing

    def resolve(self, target: RollbackTarget) -> tuple[dict[str, str], dict[str, str]]:
        """Map a rollback target to a commit reference per component.

        Args:
            target: "previous", a single ref applied to every component, a
                Revision or list of Revisions, or a mapping of component to ref.

        Returns:
            Tuple of (component -> ref, component -> reason it was not resolved).
        """
        resolved: dict[str, str] = {}
        unresolved: dict[str, str] = {}

        if isinstance(target, str) and target == PREVIOUS:
            for component in self.config.components:
                if not self.git.is_repository(component.path):
                    continue
                ref = self.history.previous(component.name)
                if ref is None:
                    unresolved[component.name] = "no previous revision recorded"
                    continue
                resolved[component.name] = ref
            return resolved, unresolved

        if isinstance(target, str):
            wanted = {c.name: target for c in self.config.components if self.git.is_repository(c.path)}
        elif isinstance(target, Revision):
            wanted = {target.component: target.commit_ref}
        elif isinstance(target, Mapping):
            wanted = dict(target)
        else:
            wanted = {revision.component: revision.commit_ref for revision in target}

        for name, ref in wanted.items():
            component = self.config.component(name)
            if component is None:
                unresolved[name] = "not a tracked component"
                continue
            if not self.git.is_repository(component.path):
                unresolved[name] = f"checkout not found at {component.path}"
                continue
            if self.git.resolve(component.path, ref) is None:
                unresolved[name] = f"revision {ref} not found"
                continue
            resolved[name] = ref
        return resolved, unresolved

    def rollback(
        self,
        target: RollbackTarget = PREVIOUS,
        confirm: Callable[[dict[str, str]], bool] | None = None,
        automatic: bool = False,
    ) -> RunReport:
        """Roll back to `target`.

        Operator-initiated rollbacks take the run lock and require `confirm`
        to approve the resolved targets before anything is changed.
        Automatic rollbacks come from a failing run that already holds the
        lock and proceed without confirmation.

        Raises:
            RollbackCancelled: If confirmation is missing or declined.
            ConcurrentRunInProgress: If another run holds the lock.
        """
        resolved, unresolved = self.resolve(target)
        if not automatic:
            if confirm is None or not confirm(dict(resolved)):
                raise RollbackCancelled()
            if self.lock is not None:
                self.lock.acquire()

        try:
            report = self._execute(resolved, unresolved, automatic)
        finally:
            if not automatic and self.lock is not None:
                self.lock.release()

        if not automatic and self.report_log is not None:
            self.report_log.append(report)
        return report

    def _execute(self, resolved: dict[str, str], unresolved: dict[str, str], automatic: bool) -> RunReport:
        report = RunReport(command="rollback", plan="automatic" if automatic else "operator")
        for name, reason in unresolved.items():
            logger.warning("rollback.unresolved", component=name, reason=reason)
            report.warnings.append(f"{name}: {reason}")
            report.append(StepOutcome(f"checkout-{name}", StepKind.SYNC, StepStatus.SKIPPED, reason=reason))

        if not resolved:
            report.error = ActionFailed(
                message="No revision to roll back to",
                remediation="deployctl history && deployctl rollback --to <ref>",
            )
            return report.finalize(RunStatus.PARTIAL_FAILURE)

        ctx = RunContext()
        log = logger.bind(run_id=report.run_id, targets=resolved)
        log.info("rollback.start", automatic=automatic)

        stopped = self.runner.run_action(
            "stop-containers", StepKind.CONTAINER_UP, StopContainers(self.runtime), ctx
        )
        report.append(stopped)

        for name, ref in resolved.items():
            component = self.config.component(name)
            outcome = self.runner.run_action(
                f"checkout-{name}", StepKind.SYNC, CheckoutRevision(self.git, component, ref), ctx
            )
            report.append(outcome)
            if outcome.status in (StepStatus.APPLIED, StepStatus.SATISFIED):
                self.history.set_active(name, self.git.head(component.path) or ref)
            elif outcome.status == StepStatus.SKIPPED:
                report.warnings.append(f"{name}: {outcome.reason}")

        restarted = self.runner.run_action(
            "restart-containers",
            StepKind.CONTAINER_UP,
            RestartContainers(self.runtime, self.config.expected_containers, build=self.profile.build_locally),
            ctx,
        )
        report.append(restarted)
        if not self.profile.build_locally:
            report.warnings.append(
                f"{self.profile.name} profile runs pulled images: rolled-back checkouts "
                "only change services whose images are built locally"
            )

        failures = report.failures
        if failures:
            first = failures[0]
            report.failed_step = first.step
            report.error = ActionFailed(
                message=first.reason or f"{first.step} failed",
                remediation=first.remediation,
                data={"detail": first.detail} if first.detail else {},
            )
            log.error("rollback.failed", step=first.step)
            return report.finalize(RunStatus.PARTIAL_FAILURE)

        log.info("rollback.done")
        return report.finalize(RunStatus.ROLLED_BACK)
