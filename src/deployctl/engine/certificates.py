"""Certificate lifecycle management.

Policy for a configured domain:
- no certificate: issue one. The proxy is stopped first to free port 80 and
  is always started again afterwards, even when issuance fails.
- remaining validity above the renewal threshold: nothing to do.
- remaining validity at or below the threshold: renew, then reload the proxy
  configuration without restarting it.

Certificate state is observed fresh on every reconcile, never cached.
"""

from __future__ import annotations

import shlex
import sys
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from ..collaborators import CertbotClient, CommandResult, ProxyController
from ..shared.logging import get_logger
from .models import CertificateState

logger = get_logger(__name__)

RENEWAL_CRON_MARKER = "deployctl-cert-renewal"

# Slack on top of the CA client's own timeout before the call is abandoned
CEILING_GRACE_SECONDS = 10.0


class CertAction(Enum):
    """What reconcile did."""

    NONE_NEEDED = "none_needed"
    ISSUED = "issued"
    RENEWED = "renewed"
    FAILED = "failed"


@dataclass
class CertReconcileResult:
    action: CertAction
    state: CertificateState
    error: str | None = None
    warnings: tuple[str, ...] = ()


class CertificateManager:
    """Decide and perform issue / renew / no-op for a domain."""

    def __init__(
        self,
        ca: CertbotClient,
        proxy: ProxyController,
        ssl_dir: Path,
        renewal_threshold_days: int = 30,
        timeout_seconds: float = 300.0,
    ):
        """Initialize the manager.

        Args:
            ca: Certificate authority client.
            proxy: Reverse proxy controller.
            ssl_dir: Directory the proxy reads certificates from.
            renewal_threshold_days: Renew when this many days or fewer remain.
            timeout_seconds: Ceiling for a single issue or renew call.
        """
        self.ca = ca
        self.proxy = proxy
        self.ssl_dir = ssl_dir
        self.renewal_threshold_days = renewal_threshold_days
        self.timeout_seconds = timeout_seconds

    def observe(self, domain: str) -> CertificateState:
        """Inspect the certificate store for `domain`."""
        return CertificateState(
            domain=domain,
            not_after=self.ca.current_expiry(domain),
            path=str(self.ca.certificate_path(domain)),
        )

    def needs_renewal(self, state: CertificateState, now: datetime | None = None) -> bool:
        remaining = state.remaining_days(now)
        return remaining is not None and remaining <= self.renewal_threshold_days

    def reconcile(self, domain: str, email: str | None = None, now: datetime | None = None) -> CertReconcileResult:
        """Bring the certificate for `domain` in line with the policy."""
        state = self.observe(domain)
        log = logger.bind(domain=domain, not_after=state.not_after.isoformat() if state.not_after else None)

        if not state.present:
            if not email:
                return CertReconcileResult(
                    CertAction.FAILED,
                    state,
                    error=f"No certificate for {domain} and no email configured to request one",
                )
            log.info("certificate.issue")
            return self._issue(domain, email, state)

        if not self.needs_renewal(state, now):
            log.info("certificate.valid", remaining_days=round(state.remaining_days(now), 1))
            return CertReconcileResult(CertAction.NONE_NEEDED, state)

        log.info("certificate.renew", remaining_days=round(state.remaining_days(now), 1))
        return self._renew(domain, state)

    def _issue(self, domain: str, email: str, state: CertificateState) -> CertReconcileResult:
        warnings: list[str] = []
        was_running = self.proxy.is_running()
        if was_running:
            stopped = self.proxy.stop()
            if not stopped.ok:
                return CertReconcileResult(
                    CertAction.FAILED, state, error=f"Could not free port 80: {stopped.describe()}"
                )

        try:
            obtained = self._bounded(lambda: self.ca.obtain(domain, email, timeout=self.timeout_seconds))
            installed = self.ca.install(domain, self.ssl_dir) if obtained.ok else None
        finally:
            if was_running:
                restarted = self.proxy.start()
                if not restarted.ok:
                    warnings.append(f"Proxy restart failed: {restarted.describe()}")
                    logger.error("proxy.restart_failed", detail=restarted.tail())

        if not obtained.ok:
            return CertReconcileResult(
                CertAction.FAILED, state, error=obtained.describe(), warnings=tuple(warnings)
            )
        if installed is not None and not installed.ok:
            return CertReconcileResult(
                CertAction.FAILED, state, error=installed.describe(), warnings=tuple(warnings)
            )
        return CertReconcileResult(CertAction.ISSUED, self.observe(domain), warnings=tuple(warnings))

    def _renew(self, domain: str, state: CertificateState) -> CertReconcileResult:
        renewed = self._bounded(lambda: self.ca.renew(domain, timeout=self.timeout_seconds))
        if not renewed.ok:
            return CertReconcileResult(CertAction.FAILED, state, error=renewed.describe())

        # certbot can exit 0 without issuing anything; only a later notAfter counts
        after = self.observe(domain)
        if after.not_after is None or after.not_after <= state.not_after:
            logger.error("certificate.renew_unchanged", domain=domain, not_after=state.not_after.isoformat())
            return CertReconcileResult(
                CertAction.FAILED,
                after,
                error=f"{renewed.describe()} but {domain} still expires {state.not_after:%Y-%m-%d %H:%M} UTC",
            )

        installed = self.ca.install(domain, self.ssl_dir)
        if not installed.ok:
            return CertReconcileResult(CertAction.FAILED, after, error=installed.describe())

        warnings: list[str] = []
        reloaded = self.proxy.reload()
        if not reloaded.ok:
            warnings.append(f"Proxy reload failed: {reloaded.describe()}")
        return CertReconcileResult(CertAction.RENEWED, after, warnings=tuple(warnings))

    def _bounded(self, call: Callable[[], CommandResult]) -> CommandResult:
        """Run a CA call under the overall ceiling; an overrun counts as failure."""
        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(call)
        try:
            return future.result(timeout=self.timeout_seconds + CEILING_GRACE_SECONDS)
        except FutureTimeout:
            logger.error("certificate.ceiling_exceeded", ceiling=self.timeout_seconds)
            return CommandResult(
                ["certbot"], 124, stderr=f"exceeded {self.timeout_seconds:.0f}s ceiling"
            )
        finally:
            executor.shutdown(wait=False)


def renewal_cron_line(
    schedule: str,
    domain: str,
    email: str | None = None,
    config_path: str | None = None,
    log_file: str | None = None,
) -> str:
    """Crontab line that runs `deployctl renew` for `domain` on `schedule`.

    The domain and email are passed explicitly, so the scheduled run does not
    depend on them being present in the config file.
    """
    args = [sys.executable, "-m", "deployctl"]
    if config_path:
        args += ["--config", config_path]
    if log_file:
        args += ["--log-file", log_file]
    args += ["renew", "--domain", domain]
    if email:
        args += ["--email", email]
    return f"{schedule} {shlex.join(args)} # {RENEWAL_CRON_MARKER}"
