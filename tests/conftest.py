"""Shared test fixtures for deployctl tests.

This module provides in-memory stand-ins for every host collaborator so the
engine can be exercised without Docker, git, certbot or root:
- FakeRuntime: compose stack with scripted container states
- FakeGit: component checkouts with a local and a remote head
- FakeEngine: networks, image pruning and scripted disk usage
- FakeCA / FakeProxy: certificate authority and reverse proxy
- FakeCrontab / FakeFirewall / FakePackages: host subsystems
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from deployctl.collaborators import CommandResult, ContainerStatus, PullResult, StackState, StackStatus
from deployctl.config import ComponentConfig, DeployConfig
from deployctl.engine import (
    ActionRunner,
    CertificateManager,
    DeploymentPlan,
    Orchestrator,
    ReportLog,
    RevisionHistory,
    RollbackController,
    RunLock,
    Step,
    StepKind,
)
from deployctl.engine.actions import PruneImages, StartContainers, StopContainers, SyncRepository
from deployctl.shared import Redactor

# =============================================================================
# Container runtime
# =============================================================================


class FakeRuntime:
    """Compose stack whose containers start when `up` succeeds."""

    def __init__(self, services: list[str] | None = None, starts: int | None = None, tmp: Path | None = None):
        self.services = services or ["nginx", "backend", "frontend"]
        # How many services `up` brings to running (default: all of them)
        self.starts = len(self.services) if starts is None else starts
        self.compose_file = (tmp or Path("/tmp")) / "docker-compose.prod.yml"
        self.running: set[str] = set()
        self.up_failures = 0
        self.config_ok = True
        self.calls: list[str] = []
        self.logs_output = "line 1\nline 2\n"

    def _ok(self, *args: str) -> CommandResult:
        return CommandResult(["docker", "compose", *args])

    def pull(self) -> CommandResult:
        self.calls.append("pull")
        return self._ok("pull")

    def up(self, build: bool = False, remove_orphans: bool = True) -> CommandResult:
        self.calls.append("up --build" if build else "up")
        if self.up_failures > 0:
            self.up_failures -= 1
            return CommandResult(["docker", "compose", "up", "-d"], 1, stderr="Error: port is already allocated")
        self.running = set(self.services[: self.starts])
        return self._ok("up", "-d")

    def down(self) -> CommandResult:
        self.calls.append("down")
        self.running.clear()
        return self._ok("down")

    def ps(self) -> list[ContainerStatus]:
        return [
            ContainerStatus(f"app-{s}-1", s, "running" if s in self.running else "exited")
            for s in self.services
        ]

    def status(self) -> StackStatus:
        containers = self.ps()
        state = StackState.RUNNING if self.running else StackState.STOPPED
        return StackStatus(state, containers)

    def logs(self, service: str | None = None, tail: int = 50) -> str:
        self.calls.append(f"logs {service}")
        return self.logs_output

    def config(self) -> CommandResult:
        return self._ok("config") if self.config_ok else CommandResult(["docker", "compose", "config"], 1, stderr="invalid")

    def exec(self, service: str, command: list[str]) -> CommandResult:
        self.calls.append(f"exec {service} {' '.join(command)}")
        return self._ok("exec", service, *command)

    def stop(self, service: str) -> CommandResult:
        self.calls.append(f"stop {service}")
        self.running.discard(service)
        return self._ok("stop", service)

    def start(self, service: str) -> CommandResult:
        self.calls.append(f"start {service}")
        self.running.add(service)
        return self._ok("start", service)


# =============================================================================
# Version control
# =============================================================================


@dataclass
class FakeRepo:
    commits: list[str]
    head: str
    remote: str
    conflict: bool = False


class FakeGit:
    """Checkouts keyed by path."""

    def __init__(self):
        self.repos: dict[Path, FakeRepo] = {}
        self.calls: list[str] = []

    def add_repo(self, path: Path, commits: list[str], head: str | None = None, remote: str | None = None) -> FakeRepo:
        repo = FakeRepo(list(commits), head or commits[0], remote or commits[-1])
        self.repos[path] = repo
        return repo

    def is_repository(self, dest: Path) -> bool:
        return dest in self.repos

    def clone(self, url: str, dest: Path, branch: str | None = None) -> CommandResult:
        self.calls.append(f"clone {url}")
        self.add_repo(dest, ["c0"])
        return CommandResult(["git", "clone", url, str(dest)])

    def head(self, dest: Path) -> str | None:
        repo = self.repos.get(dest)
        return repo.head if repo else None

    def remote_head(self, dest: Path, branch: str) -> str | None:
        repo = self.repos.get(dest)
        return repo.remote if repo else None

    def resolve(self, dest: Path, ref: str) -> str | None:
        repo = self.repos.get(dest)
        return ref if repo and ref in repo.commits else None

    def pull(self, dest: Path, branch: str) -> tuple[PullResult, CommandResult]:
        self.calls.append(f"pull {dest.name}")
        repo = self.repos[dest]
        if repo.conflict:
            return PullResult.CONFLICT, CommandResult(["git", "pull"], 1, stderr="fatal: Not possible to fast-forward")
        if repo.head == repo.remote:
            return PullResult.UP_TO_DATE, CommandResult(["git", "pull"], stdout="Already up to date.")
        repo.head = repo.remote
        return PullResult.UPDATED, CommandResult(["git", "pull"])

    def checkout(self, dest: Path, ref: str) -> CommandResult:
        self.calls.append(f"checkout {dest.name} {ref}")
        repo = self.repos[dest]
        if ref not in repo.commits:
            return CommandResult(["git", "checkout", ref], 1, stderr=f"error: pathspec '{ref}' did not match")
        repo.head = ref
        return CommandResult(["git", "checkout", ref])

    def log(self, dest: Path, count: int = 5) -> list[str]:
        repo = self.repos.get(dest)
        if not repo:
            return []
        return [f"{c[:7]} commit {c}" for c in reversed(repo.commits)][:count]


# =============================================================================
# Docker engine
# =============================================================================


class FakeEngine:
    """Disk usage readings are consumed in order; the last one repeats."""

    def __init__(self, usage: list[float] | None = None):
        self.usage = list(usage or [50.0])
        self.networks: set[str] = set()
        self.dangling: list[str] = []
        self.calls: list[str] = []

    def network_exists(self, name: str) -> bool:
        return name in self.networks

    def create_network(self, name: str) -> CommandResult:
        self.calls.append(f"network create {name}")
        self.networks.add(name)
        return CommandResult(["docker", "network", "create", name])

    def dangling_images(self) -> list[str]:
        return list(self.dangling)

    def prune_images(self) -> CommandResult:
        self.calls.append("image prune")
        self.dangling.clear()
        return CommandResult(["docker", "image", "prune", "-f"])

    def prune_system(self) -> CommandResult:
        self.calls.append("system prune")
        return CommandResult(["docker", "system", "prune", "-af", "--volumes"])

    def disk_usage_percent(self, path="/") -> float:
        if len(self.usage) > 1:
            return self.usage.pop(0)
        return self.usage[0]


# =============================================================================
# Certificates
# =============================================================================


def days_from_now(days: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


class FakeCA:
    def __init__(self, expiry: datetime | None = None):
        self.expiry = expiry
        self.obtain_ok = True
        self.renew_ok = True
        self.renew_extends = True
        self.delay = 0.0
        self.calls: list[str] = []

    def certificate_path(self, domain: str) -> Path:
        return Path("/etc/letsencrypt/live") / domain / "fullchain.pem"

    def obtain(self, domain: str, email: str, timeout: float | None = None) -> CommandResult:
        self.calls.append(f"obtain {domain}")
        if self.delay:
            time.sleep(self.delay)
        if not self.obtain_ok:
            return CommandResult(["certbot", "certonly"], 1, stderr="Problem binding to port 80")
        self.expiry = days_from_now(90)
        return CommandResult(["certbot", "certonly"])

    def renew(self, domain: str, timeout: float | None = None) -> CommandResult:
        self.calls.append(f"renew {domain}")
        if not self.renew_ok:
            return CommandResult(["certbot", "renew"], 1, stderr="renewal failed")
        if self.renew_extends:
            self.expiry = days_from_now(90)
        return CommandResult(["certbot", "renew"])

    def current_expiry(self, domain: str) -> datetime | None:
        return self.expiry

    def install(self, domain: str, ssl_dir: Path) -> CommandResult:
        self.calls.append(f"install {domain}")
        return CommandResult(["install", domain, str(ssl_dir)])


class FakeProxy:
    def __init__(self, running: bool = True):
        self.running = running
        self.reload_ok = True
        self.start_ok = True
        self.calls: list[str] = []

    def is_running(self) -> bool:
        return self.running

    def stop(self) -> CommandResult:
        self.calls.append("stop")
        self.running = False
        return CommandResult(["docker", "compose", "stop", "nginx"])

    def start(self) -> CommandResult:
        self.calls.append("start")
        if not self.start_ok:
            return CommandResult(["docker", "compose", "start", "nginx"], 1, stderr="cannot start")
        self.running = True
        return CommandResult(["docker", "compose", "start", "nginx"])

    def reload(self) -> CommandResult:
        self.calls.append("reload")
        if not self.reload_ok:
            return CommandResult(["nginx", "-s", "reload"], 1, stderr="nginx: [emerg]")
        return CommandResult(["nginx", "-s", "reload"])


# =============================================================================
# Host subsystems
# =============================================================================


class FakeCrontab:
    def __init__(self, lines: list[str] | None = None):
        self.lines = list(lines or [])

    def entries(self) -> list[str]:
        return list(self.lines)

    def replace_marked(self, marker: str, line: str) -> CommandResult:
        self.lines = [entry for entry in self.lines if marker not in entry]
        self.lines.append(line)
        return CommandResult(["crontab", "-"])


class FakeFirewall:
    def __init__(self):
        self.rules: list[str] = []
        self.enabled = False

    def is_enabled(self) -> bool:
        return self.enabled

    def has_rule(self, rule: str) -> bool:
        return rule in self.rules

    def allow(self, rule: str) -> CommandResult:
        self.rules.append(rule)
        return CommandResult(["ufw", "allow", rule])

    def enable(self) -> CommandResult:
        self.enabled = True
        return CommandResult(["ufw", "--force", "enable"])


class FakePackages:
    def __init__(self, installed: set[str] | None = None, broken: set[str] | None = None):
        self.installed = set(installed or ())
        self.broken = set(broken or ())
        self.updates = 0

    def is_installed(self, name: str) -> bool:
        return name in self.installed

    def update(self) -> CommandResult:
        self.updates += 1
        return CommandResult(["apt-get", "update"])

    def install(self, name: str) -> CommandResult:
        if name in self.broken:
            return CommandResult(["apt-get", "install", name], 100, stderr=f"E: Unable to locate package {name}")
        self.installed.add(name)
        return CommandResult(["apt-get", "install", name])


# =============================================================================
# Wiring
# =============================================================================


@dataclass
class Harness:
    """Orchestrator wired to fakes, plus the fakes themselves."""

    config: DeployConfig
    runtime: FakeRuntime
    git: FakeGit
    engine: FakeEngine
    ca: FakeCA
    proxy: FakeProxy
    history: RevisionHistory
    report_log: ReportLog
    lock: RunLock
    orchestrator: Orchestrator
    rollback: RollbackController
    transitions: list[tuple[str, str]] = field(default_factory=list)

    @property
    def backend(self) -> ComponentConfig:
        return self.config.component("backend")

    def plan(self, requirements=()) -> DeploymentPlan:
        """Preflight, Sync, ContainerUp, HealthCheck, CertReconcile, Cleanup."""
        return DeploymentPlan(
            name="deploy:default",
            steps=(
                Step("preflight", StepKind.PREFLIGHT, "preflight"),
                Step(
                    "sync-backend",
                    StepKind.SYNC,
                    "sync:backend",
                    action=SyncRepository(self.git, self.backend, self.history),
                    requires=("preflight",),
                ),
                Step(
                    "container-up",
                    StepKind.CONTAINER_UP,
                    "containers:up",
                    action=StartContainers(self.runtime, self.config.profile("default"), self.config.expected_containers),
                    rollback_action=StopContainers(self.runtime),
                    requires=("sync:backend",),
                ),
                Step("health-check", StepKind.HEALTH_CHECK, "containers:health", requires=("containers:up",)),
                Step("cert-reconcile", StepKind.CERT_RECONCILE, "certificate", requires=("containers:health",)),
                Step(
                    "cleanup",
                    StepKind.CLEANUP,
                    "cleanup:images",
                    action=PruneImages(self.engine),
                    optional=True,
                ),
            ),
            requirements=tuple(requirements),
        )


@pytest.fixture
def deploy_config(tmp_path: Path) -> DeployConfig:
    """Config with one required component and a fast health window."""
    return DeployConfig(
        base_dir=tmp_path,
        components=(ComponentConfig("backend", tmp_path / "backend", required=True),),
        compose_file=tmp_path / "docker-compose.prod.yml",
        env_file=tmp_path / ".env",
        env_templates=(),
        expected_containers=3,
        health_timeout=0.2,
        health_interval=0.01,
        ssl_dir=tmp_path / "ssl",
        state_dir=tmp_path / "state",
    )


def build_harness(config: DeployConfig, tmp_path: Path, usage: list[float] | None = None) -> Harness:
    runtime = FakeRuntime(tmp=tmp_path)
    git = FakeGit()
    engine = FakeEngine(usage)
    ca = FakeCA()
    proxy = FakeProxy()
    history = RevisionHistory(config.state_dir / "revisions.json")
    report_log = ReportLog(config.state_dir / "runs.jsonl", Redactor.from_env_files(config.env_file))
    lock = RunLock(config.state_dir / "deploy.lock")
    runner = ActionRunner()
    rollback = RollbackController(config, git, runtime, history, runner=runner)
    transitions: list[tuple[str, str]] = []
    orchestrator = Orchestrator(
        config,
        runtime,
        engine,
        lock,
        certificates=CertificateManager(ca, proxy, config.ssl_dir),
        rollback=rollback,
        report_log=report_log,
        runner=runner,
        on_transition=lambda old, new: transitions.append((old.value, new.value)),
    )
    return Harness(
        config=config,
        runtime=runtime,
        git=git,
        engine=engine,
        ca=ca,
        proxy=proxy,
        history=history,
        report_log=report_log,
        lock=lock,
        orchestrator=orchestrator,
        rollback=rollback,
        transitions=transitions,
    )


@pytest.fixture
def harness(deploy_config: DeployConfig, tmp_path: Path) -> Harness:
    """Orchestrator over fakes; backend checkout is up to date at 'aaa111'."""
    h = build_harness(deploy_config, tmp_path)
    h.git.add_repo(deploy_config.component("backend").path, ["aaa111"], head="aaa111", remote="aaa111")
    return h


@pytest.fixture
def make_harness(deploy_config: DeployConfig, tmp_path: Path):
    """Factory for a harness with scripted disk usage readings."""

    def _make(usage: list[float] | None = None, config: DeployConfig | None = None) -> Harness:
        h = build_harness(config or deploy_config, tmp_path, usage)
        h.git.add_repo(h.backend.path, ["aaa111"], head="aaa111", remote="aaa111")
        return h

    return _make


@pytest.fixture
def fake_runtime(tmp_path: Path) -> FakeRuntime:
    return FakeRuntime(tmp=tmp_path)


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def fake_ca() -> FakeCA:
    return FakeCA()


@pytest.fixture
def fake_proxy() -> FakeProxy:
    return FakeProxy()


@pytest.fixture
def fake_crontab() -> FakeCrontab:
    return FakeCrontab()


@pytest.fixture
def fake_firewall() -> FakeFirewall:
    return FakeFirewall()


@pytest.fixture
def fake_packages() -> FakePackages:
    return FakePackages()
