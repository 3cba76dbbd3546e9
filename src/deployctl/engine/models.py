"""Core data model for deployment runs.

A DeploymentPlan is an immutable, dependency-ordered sequence of Steps.
Running it produces StepOutcomes, collected in a RunReport that is
finalized once at the end of the run and then persisted.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..errors import DeployError, PlanError

if TYPE_CHECKING:
    from .actions import Action
    from .preflight import Requirement


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepKind(Enum):
    """Kind of a plan step; determines the orchestrator state it runs in."""

    PREFLIGHT = "preflight"
    PROVISION = "provision"
    SYNC = "sync"
    CONFIG_CHECK = "config_check"
    CONTAINER_UP = "container_up"
    HEALTH_CHECK = "health_check"
    CERT_RECONCILE = "cert_reconcile"
    CLEANUP = "cleanup"


class StepStatus(Enum):
    """Outcome status of a single step."""

    SATISFIED = "satisfied"  # desired state already true, nothing changed
    APPLIED = "applied"  # action ran and desired state now observed
    SKIPPED = "skipped"  # not applicable to this run
    FAILED = "failed"


class RunStatus(Enum):
    """Overall status of a run."""

    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class Step:
    """One unit of work in a plan.

    `action` is the check-then-act unit driven by the ActionRunner; steps of
    kind PREFLIGHT, HEALTH_CHECK and CERT_RECONCILE are handled by the
    orchestrator itself and carry no action.
    """

    name: str
    kind: StepKind
    idempotency_key: str
    action: Action | None = None
    rollback_action: Action | None = None
    requires: tuple[str, ...] = ()
    # A failing optional step is recorded but does not stop the run
    optional: bool = False


@dataclass(frozen=True)
class DeploymentPlan:
    """Ordered steps for one run. Immutable once constructed.

    `requirements` are evaluated by the PREFLIGHT step before anything on
    the host is changed.
    """

    name: str
    steps: tuple[Step, ...]
    requirements: tuple[Requirement, ...] = ()

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for step in self.steps:
            if step.idempotency_key in seen:
                raise PlanError(
                    message=f"Duplicate idempotency key '{step.idempotency_key}' in plan '{self.name}'"
                )
            missing = [req for req in step.requires if req not in seen]
            if missing:
                raise PlanError(
                    message=(
                        f"Step '{step.name}' requires {', '.join(missing)} "
                        f"which must come earlier in plan '{self.name}'"
                    )
                )
            seen.add(step.idempotency_key)

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    def has_kind(self, kind: StepKind) -> bool:
        return any(step.kind == kind for step in self.steps)


@dataclass(frozen=True)
class StepOutcome:
    """Result of one step. Never mutated after creation."""

    step: str
    kind: StepKind
    status: StepStatus
    reason: str | None = None
    detail: str | None = None
    remediation: str | None = None
    attempts: int = 0
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "kind": self.kind.value,
            "status": self.status.value,
            "reason": self.reason,
            "detail": self.detail,
            "remediation": self.remediation,
            "attempts": self.attempts,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Revision:
    """A commit of one tracked component."""

    component: str
    commit_ref: str


@dataclass(frozen=True)
class CertificateState:
    """Observed certificate for a domain. Re-derived every run."""

    domain: str
    not_after: datetime | None
    path: str

    @property
    def present(self) -> bool:
        return self.not_after is not None

    def remaining_days(self, now: datetime | None = None) -> float | None:
        if self.not_after is None:
            return None
        now = now or utcnow()
        return (self.not_after - now).total_seconds() / 86400


@dataclass
class RunContext:
    """Mutable per-run facts shared between steps.

    `changed` maps component name to (revision before, revision after) for
    every component whose checkout moved during this run;
    `revisions_before` holds each synced component's head at run start.
    """

    changed: dict[str, tuple[str | None, str]] = field(default_factory=dict)
    revisions_before: dict[str, str] = field(default_factory=dict)
    containers_started: bool = False

    def record_change(self, component: str, before: str | None, after: str) -> None:
        if component in self.changed:
            before = self.changed[component][0]
        self.changed[component] = (before, after)


@dataclass
class RunReport:
    """Ordered step outcomes plus the overall status of a run.

    Created at run start, appended to during the run and finalized once.
    """

    command: str
    plan: str = ""
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    status: RunStatus = RunStatus.RUNNING
    outcomes: list[StepOutcome] = field(default_factory=list)
    states: list[str] = field(default_factory=list)
    error: DeployError | None = None
    failed_step: str | None = None
    container_logs: dict[str, str] = field(default_factory=dict)
    rollback_attempted: bool = False
    rollback_succeeded: bool | None = None
    rollback_report: RunReport | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def finalized(self) -> bool:
        return self.finished_at is not None

    def append(self, outcome: StepOutcome) -> None:
        if self.finalized:
            raise RuntimeError(f"Run report {self.run_id} is finalized")
        self.outcomes.append(outcome)

    def finalize(self, status: RunStatus) -> RunReport:
        if self.finalized:
            raise RuntimeError(f"Run report {self.run_id} is already finalized")
        self.status = status
        self.finished_at = utcnow()
        return self

    def count(self, status: StepStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def failures(self) -> list[StepOutcome]:
        return [outcome for outcome in self.outcomes if outcome.failed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "command": self.command,
            "plan": self.plan,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "states": list(self.states),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "error": self.error.to_dict() if self.error else None,
            "failed_step": self.failed_step,
            "container_logs": dict(self.container_logs),
            "rollback_attempted": self.rollback_attempted,
            "rollback_succeeded": self.rollback_succeeded,
            "rollback": self.rollback_report.to_dict() if self.rollback_report else None,
            "warnings": list(self.warnings),
        }
