"""Idempotent action runner.

Applies a step with the predicate-act-recheck pattern:

1. Evaluate the action's predicate. If the desired state already holds,
   the step is SATISFIED and nothing is changed.
2. Otherwise perform the action, then evaluate the predicate again.
3. If the state still does not hold, retry the action once, then report
   FAILED with the exit status and stderr tail of the last attempt.
"""

from __future__ import annotations

from ..collaborators import CommandResult
from ..shared.logging import get_logger
from .actions import Action
from .models import RunContext, Step, StepKind, StepOutcome, StepStatus

logger = get_logger(__name__)

MAX_ATTEMPTS = 2


class ActionRunner:
    """Apply steps idempotently."""

    def __init__(self, max_attempts: int = MAX_ATTEMPTS):
        self.max_attempts = max_attempts

    def apply(self, step: Step, ctx: RunContext) -> StepOutcome:
        """Apply a step's action and report the outcome."""
        if step.action is None:
            return StepOutcome(step.name, step.kind, StepStatus.SKIPPED, reason="no action")
        return self.run_action(step.name, step.kind, step.action, ctx)

    def run_action(self, name: str, kind: StepKind, action: Action, ctx: RunContext) -> StepOutcome:
        log = logger.bind(step=name, action=action.description)

        try:
            reason = action.skip_reason(ctx)
            if reason:
                log.warning("step.skipped", reason=reason)
                return StepOutcome(name, kind, StepStatus.SKIPPED, reason=reason)

            if action.check(ctx):
                log.info("step.satisfied")
                return StepOutcome(name, kind, StepStatus.SATISFIED)

            last: CommandResult | None = None
            for attempt in range(1, self.max_attempts + 1):
                log.info("step.applying", attempt=attempt)
                last = action.apply(ctx)
                if action.check(ctx):
                    log.info("step.applied", attempt=attempt)
                    return StepOutcome(name, kind, StepStatus.APPLIED, attempts=attempt)
                log.warning(
                    "step.recheck_failed",
                    attempt=attempt,
                    returncode=last.returncode,
                    stderr=last.tail(3),
                )
        except Exception as e:
            log.exception("step.error")
            return StepOutcome(
                name,
                kind,
                StepStatus.FAILED,
                reason=f"{action.description} raised {type(e).__name__}",
                detail=str(e),
                remediation=action.remediation,
            )

        reason = f"{action.description} did not take effect"
        return StepOutcome(
            name,
            kind,
            StepStatus.FAILED,
            reason=reason,
            detail=last.describe() if last is not None else None,
            remediation=action.remediation,
            attempts=self.max_attempts,
        )
