"""Health polling after containers start.

Waits, within a bounded window, until the minimum number of expected
containers report running and, when a health URL is configured, the
application answers it with a 2xx response.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

from ..collaborators import ComposeRuntime, ContainerStatus


@dataclass
class HealthCheckResult:
    """Result of a health wait."""

    healthy: bool
    running: int = 0
    expected: int = 0
    attempts: int = 0
    elapsed_seconds: float = 0.0
    error: str | None = None
    containers: list[ContainerStatus] = field(default_factory=list)


class ContainerHealthPoller:
    """Poll container states (and optionally an HTTP endpoint)."""

    def __init__(
        self,
        runtime: ComposeRuntime,
        expected: int,
        timeout_seconds: float = 30.0,
        interval_seconds: float = 3.0,
        url: str | None = None,
        request_timeout: float = 5.0,
    ):
        """Initialize health poller.

        Args:
            runtime: Compose runtime to query.
            expected: Minimum number of containers that must be running.
            timeout_seconds: Overall wait window.
            interval_seconds: Seconds between attempts.
            url: Optional HTTP health endpoint.
            request_timeout: Timeout for each HTTP request.
        """
        self.runtime = runtime
        self.expected = expected
        self.timeout_seconds = timeout_seconds
        self.interval_seconds = interval_seconds
        self.url = url
        self.request_timeout = request_timeout

    async def _check_url(self) -> str | None:
        """Return None when the endpoint is healthy, else the error."""
        try:
            async with httpx.AsyncClient(timeout=self.request_timeout) as client:
                response = await client.get(self.url)
                if 200 <= response.status_code < 300:
                    return None
                return f"HTTP {response.status_code} from {self.url}"
        except httpx.ConnectError:
            return f"Connection refused: {self.url}"
        except httpx.TimeoutException:
            return f"Request timeout: {self.url}"
        except httpx.HTTPError as e:
            return str(e)

    async def wait_for_healthy(
        self,
        on_attempt: Callable[[int, int, str | None], None] | None = None,
    ) -> HealthCheckResult:
        """Poll until healthy or the window closes.

        Args:
            on_attempt: Optional callback called with (attempt, running, error)
                       for progress reporting.

        Returns:
            HealthCheckResult with status information.
        """
        start = time.monotonic()
        deadline = start + self.timeout_seconds
        attempt = 0
        running = 0
        containers: list[ContainerStatus] = []
        last_error: str | None = None

        while True:
            attempt += 1
            containers = self.runtime.ps()
            running = sum(1 for c in containers if c.running)

            if running >= self.expected:
                last_error = await self._check_url() if self.url else None
                if last_error is None:
                    return HealthCheckResult(
                        healthy=True,
                        running=running,
                        expected=self.expected,
                        attempts=attempt,
                        elapsed_seconds=time.monotonic() - start,
                        containers=containers,
                    )
            else:
                last_error = f"{running}/{self.expected} containers running"

            if on_attempt:
                on_attempt(attempt, running, last_error)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.interval_seconds, remaining))

        return HealthCheckResult(
            healthy=False,
            running=running,
            expected=self.expected,
            attempts=attempt,
            elapsed_seconds=time.monotonic() - start,
            error=f"Not healthy within {self.timeout_seconds:.0f}s. Last error: {last_error}",
            containers=containers,
        )

    def wait_for_healthy_sync(
        self,
        on_attempt: Callable[[int, int, str | None], None] | None = None,
    ) -> HealthCheckResult:
        """Synchronous wrapper for wait_for_healthy."""
        return asyncio.run(self.wait_for_healthy(on_attempt))
