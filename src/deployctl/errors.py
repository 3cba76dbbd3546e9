"""Error taxonomy and exit codes for deployctl.

Every fatal condition carries a short code, a human message and, where one
exists, the external command an operator should run to fix it.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ExitCode(IntEnum):
    """Process exit codes for the operator-facing commands."""

    SUCCESS = 0
    ERROR = 1  # usage errors, config errors, operator cancellation
    PREFLIGHT_FAILED = 2
    DEPLOY_FAILED = 3  # no rollback attempted
    ROLLED_BACK = 4  # deployment failed, rollback succeeded
    ROLLBACK_FAILED = 5  # deployment failed, rollback attempted and failed
    LOCKED = 6  # another run holds the lock


@dataclass
class DeployError(Exception):
    """Base error class for deployment errors."""

    code: str
    message: str
    remediation: str | None = None
    rollback_eligible: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict for run reports."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.remediation:
            error["remediation"] = self.remediation
        if self.data:
            error["data"] = self.data
        return error


@dataclass
class PreflightMissing(DeployError):
    """One or more required capabilities are missing. Nothing was changed."""

    code: str = "PREFLIGHT_MISSING"
    message: str = "Preflight checks failed"
    rollback_eligible: bool = False


@dataclass
class ActionFailed(DeployError):
    """An action ran but its desired end state is still not observed."""

    code: str = "ACTION_FAILED"
    message: str = "Action failed"
    rollback_eligible: bool = True


@dataclass
class HealthCheckTimeout(DeployError):
    """Containers did not report running within the wait window."""

    code: str = "HEALTH_CHECK_TIMEOUT"
    message: str = "Containers did not become healthy in time"
    remediation: str | None = "docker compose ps && docker compose logs --tail=50"
    rollback_eligible: bool = True


@dataclass
class CertificateError(DeployError):
    """Certificate issuance or renewal failed."""

    code: str = "CERTIFICATE_ERROR"
    message: str = "Certificate reconcile failed"
    remediation: str | None = "certbot certificates && certbot renew --dry-run"
    rollback_eligible: bool = True


@dataclass
class ConcurrentRunInProgress(DeployError):
    """Another run holds the run lock."""

    code: str = "CONCURRENT_RUN_IN_PROGRESS"
    message: str = "Another deployment run is in progress"
    rollback_eligible: bool = False


@dataclass
class InsufficientDiskSpace(DeployError):
    """Disk usage stayed over the threshold after one cleanup pass."""

    code: str = "INSUFFICIENT_DISK_SPACE"
    message: str = "Insufficient disk space"
    remediation: str | None = "df -h / && docker system df"
    rollback_eligible: bool = True


@dataclass
class RunAborted(DeployError):
    """The operator asked the run to stop."""

    code: str = "RUN_ABORTED"
    message: str = "Run aborted by operator"
    rollback_eligible: bool = True


@dataclass
class ConfigError(DeployError):
    """Configuration could not be loaded or is inconsistent."""

    code: str = "CONFIG_ERROR"
    message: str = "Invalid configuration"


@dataclass
class PlanError(DeployError):
    """A deployment plan violates its ordering invariants."""

    code: str = "PLAN_ERROR"
    message: str = "Invalid deployment plan"


@dataclass
class RollbackCancelled(DeployError):
    """Operator declined the rollback confirmation."""

    code: str = "ROLLBACK_CANCELLED"
    message: str = "Rollback cancelled"
