"""Docker Compose container runtime.

This module wraps the `docker compose` lifecycle for the application stack:
pull, up, down, ps, logs and exec, plus stop/start/reload of the reverse
proxy container around certificate issuance.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .shell import CommandResult, run_command

DEFAULT_COMPOSE_TIMEOUT = 900.0


class StackState(Enum):
    """State of the docker-compose stack."""

    NOT_FOUND = "not_found"  # No compose file
    STOPPED = "stopped"  # Compose file exists, services down
    PARTIAL = "partial"  # Some services running
    RUNNING = "running"  # All services running


@dataclass
class ContainerStatus:
    """One container as reported by `docker compose ps`."""

    name: str
    service: str
    state: str

    @property
    def running(self) -> bool:
        return self.state == "running"


@dataclass
class StackStatus:
    """Status of the docker-compose stack."""

    state: StackState
    containers: list[ContainerStatus] = field(default_factory=list)
    message: str = ""

    @property
    def running_services(self) -> list[str]:
        return [c.service for c in self.containers if c.running]

    @property
    def stopped_services(self) -> list[str]:
        return [c.service for c in self.containers if not c.running]


def parse_ps_output(output: str) -> list[ContainerStatus]:
    """Parse `docker compose ps --format json` output.

    Older compose releases print one JSON object per line, newer ones a
    single JSON array. Both are accepted.
    """
    output = output.strip()
    if not output:
        return []

    records: list[dict] = []
    if output.startswith("["):
        try:
            records = json.loads(output)
        except json.JSONDecodeError:
            records = []
    else:
        for line in output.splitlines():
            if line.strip():
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    continue

    return [
        ContainerStatus(
            name=r.get("Name", r.get("Service", "unknown")),
            service=r.get("Service", r.get("Name", "unknown")),
            state=str(r.get("State", "unknown")).lower(),
        )
        for r in records
    ]


class ComposeRuntime:
    """Manage the docker-compose application stack."""

    def __init__(
        self,
        compose_file: Path,
        profile: str | None = None,
        timeout: float = DEFAULT_COMPOSE_TIMEOUT,
    ):
        """Initialize the runtime.

        Args:
            compose_file: Path to the compose file.
            profile: Optional compose profile (e.g. "local-db").
            timeout: Ceiling in seconds for any single compose command.
        """
        self.compose_file = compose_file
        self.compose_dir = compose_file.parent
        self.profile = profile
        self.timeout = timeout

    def _args(self, *command: str) -> list[str]:
        args = ["docker", "compose"]
        if self.profile:
            args.extend(["--profile", self.profile])
        args.extend(["-f", str(self.compose_file)])
        args.extend(command)
        return args

    def _run(self, *command: str, timeout: float | None = None) -> CommandResult:
        return run_command(
            self._args(*command),
            cwd=self.compose_dir,
            timeout=timeout or self.timeout,
        )

    def pull(self) -> CommandResult:
        """Pull images for all services."""
        return self._run("pull")

    def up(self, build: bool = False, remove_orphans: bool = True) -> CommandResult:
        """Start the stack detached.

        Args:
            build: Build images locally before starting.
            remove_orphans: Remove containers for services no longer defined.
        """
        command = ["up", "-d"]
        if build:
            command.append("--build")
        if remove_orphans:
            command.append("--remove-orphans")
        return self._run(*command)

    def down(self) -> CommandResult:
        """Stop and remove the stack's containers (volumes are kept)."""
        return self._run("down")

    def ps(self) -> list[ContainerStatus]:
        """List containers of the stack with their state."""
        if not self.compose_file.exists():
            return []
        result = self._run("ps", "--all", "--format", "json", timeout=60)
        if not result.ok:
            return []
        return parse_ps_output(result.stdout)

    def status(self) -> StackStatus:
        """Get current stack status.

        Returns:
            StackStatus with current state and container information.
        """
        if not self.compose_file.exists():
            return StackStatus(StackState.NOT_FOUND, message=f"No compose file at {self.compose_file}")

        containers = self.ps()
        if not containers:
            return StackStatus(StackState.STOPPED, message="No services found")

        running = [c for c in containers if c.running]
        if not running:
            state = StackState.STOPPED
        elif len(running) == len(containers):
            state = StackState.RUNNING
        else:
            state = StackState.PARTIAL
        return StackStatus(state, containers)

    def logs(self, service: str | None = None, tail: int = 50) -> str:
        """Capture the last lines of output for one or all services."""
        command = ["logs", "--no-color", "--tail", str(tail)]
        if service:
            command.append(service)
        result = self._run(*command, timeout=60)
        return result.stdout if result.ok else result.stderr

    def config(self) -> CommandResult:
        """Validate the compose file (and its env interpolation) without starting anything."""
        return self._run("config", "--quiet", timeout=60)

    def exec(self, service: str, command: list[str]) -> CommandResult:
        """Run a command inside a running service container."""
        return self._run("exec", "-T", service, *command, timeout=120)

    def stop(self, service: str) -> CommandResult:
        return self._run("stop", service, timeout=120)

    def start(self, service: str) -> CommandResult:
        return self._run("start", service, timeout=120)


class ProxyController:
    """Control the reverse proxy container around certificate operations."""

    def __init__(self, runtime: ComposeRuntime, service: str = "nginx"):
        self.runtime = runtime
        self.service = service

    def is_running(self) -> bool:
        return any(c.service == self.service and c.running for c in self.runtime.ps())

    def stop(self) -> CommandResult:
        """Stop the proxy so the certificate client can bind port 80."""
        return self.runtime.stop(self.service)

    def start(self) -> CommandResult:
        return self.runtime.start(self.service)

    def reload(self) -> CommandResult:
        """Reload proxy configuration without restarting the container."""
        return self.runtime.exec(self.service, ["nginx", "-s", "reload"])
