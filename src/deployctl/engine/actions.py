"""Idempotent actions.

Every action pairs a side-effect-free predicate ("is the desired end state
already true?") with the mutation that makes it true. The ActionRunner
evaluates the predicate, acts only when needed and re-evaluates afterwards.
"""

from __future__ import annotations

import hashlib
import shutil
from abc import ABC, abstractmethod
from pathlib import Path

from ..collaborators import (
    AptPackageManager,
    CommandResult,
    ComposeRuntime,
    Crontab,
    DockerEngine,
    GitClient,
    PullResult,
    UfwFirewall,
    run_command,
)
from ..config import ComponentConfig, DeploymentProfile
from .history import RevisionHistory
from .models import RunContext


def _failure(description: str, message: str) -> CommandResult:
    return CommandResult([description], 1, stderr=message)


class Action(ABC):
    """A check-then-act unit of work."""

    description: str = ""
    remediation: str | None = None

    def skip_reason(self, ctx: RunContext) -> str | None:
        """Reason this action does not apply to the run, or None."""
        return None

    @abstractmethod
    def check(self, ctx: RunContext) -> bool:
        """Whether the desired end state already holds. Must not change the host."""

    @abstractmethod
    def apply(self, ctx: RunContext) -> CommandResult:
        """Perform the mutation."""


# ── Host provisioning ──────────────────────────────────────────


class EnsurePackage(Action):
    def __init__(self, packages: AptPackageManager, name: str):
        self.packages = packages
        self.name = name
        self.description = f"install package {name}"
        self.remediation = f"apt-get update && apt-get install -y {name}"

    def check(self, ctx: RunContext) -> bool:
        return self.packages.is_installed(self.name)

    def apply(self, ctx: RunContext) -> CommandResult:
        updated = self.packages.update()
        if not updated.ok:
            return updated
        return self.packages.install(self.name)


class EnsureBinary(Action):
    """A binary on PATH, installed by a shell command when absent."""

    def __init__(self, name: str, install_command: str):
        self.name = name
        self.install_command = install_command
        self.description = f"install {name}"
        self.remediation = install_command

    def check(self, ctx: RunContext) -> bool:
        return shutil.which(self.name) is not None

    def apply(self, ctx: RunContext) -> CommandResult:
        return run_command(["sh", "-c", self.install_command], timeout=1800)


class EnsureDirectory(Action):
    def __init__(self, path: Path):
        self.path = path
        self.description = f"create directory {path}"

    def check(self, ctx: RunContext) -> bool:
        return self.path.is_dir()

    def apply(self, ctx: RunContext) -> CommandResult:
        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return _failure(f"mkdir {self.path}", str(e))
        return CommandResult(["mkdir", "-p", str(self.path)])


class EnsureFirewallRule(Action):
    def __init__(self, firewall: UfwFirewall, rule: str):
        self.firewall = firewall
        self.rule = rule
        self.description = f"allow {rule} through firewall"
        self.remediation = f"ufw allow {rule}"

    def check(self, ctx: RunContext) -> bool:
        return self.firewall.has_rule(self.rule)

    def apply(self, ctx: RunContext) -> CommandResult:
        return self.firewall.allow(self.rule)


class EnsureFirewallEnabled(Action):
    description = "enable firewall"
    remediation = "ufw --force enable"

    def __init__(self, firewall: UfwFirewall):
        self.firewall = firewall

    def check(self, ctx: RunContext) -> bool:
        return self.firewall.is_enabled()

    def apply(self, ctx: RunContext) -> CommandResult:
        return self.firewall.enable()


class EnsureCronEntry(Action):
    """Exactly one crontab line carrying `marker`, with the current command."""

    def __init__(self, crontab: Crontab, marker: str, line: str):
        self.crontab = crontab
        self.marker = marker
        self.line = line if marker in line else f"{line} # {marker}"
        self.description = f"schedule {marker}"
        self.remediation = f"(crontab -l; echo '{self.line}') | crontab -"

    def check(self, ctx: RunContext) -> bool:
        marked = [entry for entry in self.crontab.entries() if self.marker in entry]
        return marked == [self.line]

    def apply(self, ctx: RunContext) -> CommandResult:
        return self.crontab.replace_marked(self.marker, self.line)


# ── Code and configuration ─────────────────────────────────────


class CloneRepository(Action):
    def __init__(self, git: GitClient, component: ComponentConfig):
        self.git = git
        self.component = component
        self.description = f"clone {component.name}"
        self.remediation = f"git clone {component.repo_url or '<repo-url>'} {component.path}"

    def skip_reason(self, ctx: RunContext) -> str | None:
        if not self.component.repo_url and not self.git.is_repository(self.component.path):
            return f"no repository URL configured for {self.component.name}"
        return None

    def check(self, ctx: RunContext) -> bool:
        return self.git.is_repository(self.component.path)

    def apply(self, ctx: RunContext) -> CommandResult:
        if self.component.path.exists() and any(self.component.path.iterdir()):
            return _failure(
                f"clone {self.component.name}",
                f"{self.component.path} exists and is not an empty git checkout",
            )
        return self.git.clone(self.component.repo_url, self.component.path, self.component.branch)


class SyncRepository(Action):
    """Fast-forward a component checkout to the tip of its branch.

    Records every revision change in the run context and the revision
    history so the run can be rolled back.
    """

    def __init__(self, git: GitClient, component: ComponentConfig, history: RevisionHistory):
        self.git = git
        self.component = component
        self.history = history
        self.description = f"sync {component.name} to origin/{component.branch}"
        self.remediation = (
            f"cd {component.path} && git status && git pull origin {component.branch}"
        )

    def skip_reason(self, ctx: RunContext) -> str | None:
        if not self.component.required and not self.git.is_repository(self.component.path):
            return f"{self.component.name} checkout not found at {self.component.path}"
        return None

    def check(self, ctx: RunContext) -> bool:
        path = self.component.path
        if not self.git.is_repository(path):
            return False
        head = self.git.head(path)
        if head and self.component.name not in ctx.revisions_before:
            ctx.revisions_before[self.component.name] = head
        remote = self.git.remote_head(path, self.component.branch)
        return head is not None and head == remote

    def apply(self, ctx: RunContext) -> CommandResult:
        path = self.component.path
        if not self.git.is_repository(path):
            return _failure(f"sync {self.component.name}", f"{path} is not a git checkout")

        before = self.git.head(path)
        outcome, result = self.git.pull(path, self.component.branch)
        if outcome == PullResult.CONFLICT:
            return result

        after = self.git.head(path)
        if outcome == PullResult.UPDATED and after:
            if before:
                self.history.ensure_baseline(self.component.name, before)
            self.history.record(self.component.name, after)
            ctx.record_change(self.component.name, before, after)
        return result


class CheckoutRevision(Action):
    """Check out a specific commit of a component."""

    def __init__(self, git: GitClient, component: ComponentConfig, ref: str):
        self.git = git
        self.component = component
        self.ref = ref
        self.description = f"check out {component.name} at {ref}"
        self.remediation = f"cd {component.path} && git checkout {ref}"

    def skip_reason(self, ctx: RunContext) -> str | None:
        if not self.git.is_repository(self.component.path):
            return f"{self.component.name} checkout not found at {self.component.path}"
        if self.git.resolve(self.component.path, self.ref) is None:
            return f"revision {self.ref} not found in {self.component.name}"
        return None

    def check(self, ctx: RunContext) -> bool:
        target = self.git.resolve(self.component.path, self.ref)
        return target is not None and self.git.head(self.component.path) == target

    def apply(self, ctx: RunContext) -> CommandResult:
        return self.git.checkout(self.component.path, self.ref)


class RequireFile(Action):
    """A file that must exist but that this tool cannot create."""

    def __init__(self, path: Path, remediation: str | None = None):
        self.path = path
        self.description = f"require {path}"
        self.remediation = remediation

    def check(self, ctx: RunContext) -> bool:
        return self.path.is_file()

    def apply(self, ctx: RunContext) -> CommandResult:
        return _failure(f"test -f {self.path}", f"{self.path} not found")


class ValidateComposeConfig(Action):
    """The compose file parses and interpolates cleanly. Check-only."""

    description = "validate compose configuration"

    def __init__(self, runtime: ComposeRuntime):
        self.runtime = runtime
        self.remediation = f"docker compose -f {runtime.compose_file} config"
        self._last: CommandResult | None = None

    def check(self, ctx: RunContext) -> bool:
        self._last = self.runtime.config()
        return self._last.ok

    def apply(self, ctx: RunContext) -> CommandResult:
        return self._last or self.runtime.config()


class EnsureEnvFile(Action):
    """Seed an environment file from its template. Never overwrites."""

    def __init__(self, target: Path, template: Path):
        self.target = target
        self.template = template
        self.description = f"create {target} from template"
        self.remediation = f"cp {template} {target} && $EDITOR {target}"

    def skip_reason(self, ctx: RunContext) -> str | None:
        if not self.target.exists() and not self.template.exists():
            return f"template {self.template} not found"
        return None

    def check(self, ctx: RunContext) -> bool:
        return self.target.exists()

    def apply(self, ctx: RunContext) -> CommandResult:
        try:
            self.target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(self.template, self.target)
            self.target.chmod(0o600)
        except OSError as e:
            return _failure(f"cp {self.template} {self.target}", str(e))
        return CommandResult(["cp", str(self.template), str(self.target)])


# ── Containers ─────────────────────────────────────────────────


class EnsureNetwork(Action):
    def __init__(self, engine: DockerEngine, name: str):
        self.engine = engine
        self.name = name
        self.description = f"create docker network {name}"
        self.remediation = f"docker network create {name}"

    def check(self, ctx: RunContext) -> bool:
        return self.engine.network_exists(self.name)

    def apply(self, ctx: RunContext) -> CommandResult:
        return self.engine.create_network(self.name)


def input_fingerprint(paths: tuple[Path, ...], salt: str = "") -> str:
    """sha256 over the names and contents of `paths`; missing files count too."""
    digest = hashlib.sha256(salt.encode())
    for path in paths:
        digest.update(str(path).encode())
        try:
            digest.update(path.read_bytes())
        except FileNotFoundError:
            digest.update(b"\0missing")
    return digest.hexdigest()


class StartContainers(Action):
    """Bring the compose stack up for the current checkouts.

    Already satisfied when nothing was synced this run, the expected number of
    containers is running and, when a stamp file is given, the compose and env
    files still match what the last successful `up` started from.
    """

    def __init__(
        self,
        runtime: ComposeRuntime,
        profile: DeploymentProfile,
        expected: int,
        inputs: tuple[Path, ...] = (),
        stamp_file: Path | None = None,
    ):
        self.runtime = runtime
        self.profile = profile
        self.expected = expected
        self.inputs = inputs
        self.stamp_file = stamp_file
        self.description = f"start containers ({profile.name} profile)"
        self.remediation = f"docker compose -f {runtime.compose_file} up -d && docker compose logs --tail=50"

    def _running(self) -> int:
        return sum(1 for container in self.runtime.ps() if container.running)

    def _fingerprint(self) -> str:
        return input_fingerprint(self.inputs, salt=self.profile.name)

    def _inputs_unchanged(self) -> bool:
        if self.stamp_file is None:
            return True
        try:
            return self.stamp_file.read_text().strip() == self._fingerprint()
        except FileNotFoundError:
            return False

    def check(self, ctx: RunContext) -> bool:
        if ctx.changed and not ctx.containers_started:
            return False
        if not self._inputs_unchanged():
            return False
        return self._running() >= self.expected

    def apply(self, ctx: RunContext) -> CommandResult:
        if not self.profile.build_locally:
            pulled = self.runtime.pull()
            if not pulled.ok:
                return pulled
        result = self.runtime.up(build=self.profile.build_locally)
        if result.ok:
            ctx.containers_started = True
            if self.stamp_file is not None:
                self.stamp_file.parent.mkdir(parents=True, exist_ok=True)
                self.stamp_file.write_text(self._fingerprint() + "\n")
        return result


class StopContainers(Action):
    """Stop the compose stack."""

    description = "stop containers"

    def __init__(self, runtime: ComposeRuntime):
        self.runtime = runtime
        self.remediation = f"docker compose -f {runtime.compose_file} down"

    def check(self, ctx: RunContext) -> bool:
        return not any(container.running for container in self.runtime.ps())

    def apply(self, ctx: RunContext) -> CommandResult:
        ctx.containers_started = False
        return self.runtime.down()


class RestartContainers(Action):
    """Start the stack from whatever is checked out now, rebuilding if asked."""

    def __init__(self, runtime: ComposeRuntime, expected: int, build: bool = True):
        self.runtime = runtime
        self.expected = expected
        self.build = build
        self.description = "rebuild and start containers" if build else "start containers"
        self.remediation = f"docker compose -f {runtime.compose_file} up -d" + (" --build" if build else "")

    def check(self, ctx: RunContext) -> bool:
        if not ctx.containers_started:
            return False
        return sum(1 for c in self.runtime.ps() if c.running) >= self.expected

    def apply(self, ctx: RunContext) -> CommandResult:
        result = self.runtime.up(build=self.build)
        if result.ok:
            ctx.containers_started = True
        return result


class PruneImages(Action):
    description = "remove dangling images"
    remediation = "docker image prune -f"

    def __init__(self, engine: DockerEngine):
        self.engine = engine

    def check(self, ctx: RunContext) -> bool:
        return not self.engine.dangling_images()

    def apply(self, ctx: RunContext) -> CommandResult:
        return self.engine.prune_images()
