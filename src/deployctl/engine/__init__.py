"""Deployment engine: plans, idempotent actions, orchestration and rollback."""

from .certificates import CertAction, CertificateManager, CertReconcileResult, renewal_cron_line
from .health import ContainerHealthPoller, HealthCheckResult
from .history import ReportLog, RevisionHistory
from .lock import RunLock
from .models import (
    CertificateState,
    DeploymentPlan,
    Revision,
    RunContext,
    RunReport,
    RunStatus,
    Step,
    StepKind,
    StepOutcome,
    StepStatus,
)
from .orchestrator import Orchestrator, OrchestratorState, exit_code_for
from .plans import build_certificate_plan, build_deploy_plan, build_provision_plan
from .preflight import PreflightChecker, PreflightResult
from .rollback import PREVIOUS, ComponentRevisions, RollbackController
from .runner import ActionRunner

__all__ = [
    # Model
    "CertificateState",
    "DeploymentPlan",
    "Revision",
    "RunContext",
    "RunReport",
    "RunStatus",
    "Step",
    "StepKind",
    "StepOutcome",
    "StepStatus",
    # Plans
    "build_deploy_plan",
    "build_provision_plan",
    "build_certificate_plan",
    # Execution
    "ActionRunner",
    "PreflightChecker",
    "PreflightResult",
    "ContainerHealthPoller",
    "HealthCheckResult",
    "Orchestrator",
    "OrchestratorState",
    "exit_code_for",
    # Certificates
    "CertAction",
    "CertificateManager",
    "CertReconcileResult",
    "renewal_cron_line",
    # Rollback
    "PREVIOUS",
    "ComponentRevisions",
    "RollbackController",
    # Persistence
    "RunLock",
    "RevisionHistory",
    "ReportLog",
]
