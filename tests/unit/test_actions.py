"""Unit tests for idempotent actions."""

from __future__ import annotations

import stat
from pathlib import Path
from unittest.mock import patch

from deployctl.collaborators import CommandResult
from deployctl.config import ComponentConfig, DeploymentProfile
from deployctl.engine import ActionRunner, RevisionHistory, Step, StepKind, StepStatus
from deployctl.engine.actions import (
    CheckoutRevision,
    CloneRepository,
    EnsureBinary,
    EnsureCronEntry,
    EnsureDirectory,
    EnsureEnvFile,
    EnsureFirewallEnabled,
    EnsureFirewallRule,
    EnsureNetwork,
    EnsurePackage,
    RequireFile,
    StartContainers,
    SyncRepository,
    ValidateComposeConfig,
    input_fingerprint,
)
from deployctl.engine.models import RunContext


def _run(action, ctx: RunContext | None = None):
    step = Step("step", StepKind.PROVISION, "step", action=action)
    return ActionRunner().apply(step, ctx or RunContext())


class TestEnsureCronEntry:
    """Tests for crontab scheduling."""

    def test_installed_once(self, fake_crontab):
        """Running twice leaves exactly one entry."""
        action = EnsureCronEntry(fake_crontab, "deployctl-cert-renewal", "0 3 * * * deployctl renew")

        first = _run(action)
        second = _run(action)

        assert first.status == StepStatus.APPLIED
        assert second.status == StepStatus.SATISFIED
        assert fake_crontab.lines == ["0 3 * * * deployctl renew # deployctl-cert-renewal"]

    def test_stale_entry_is_replaced(self, fake_crontab):
        """An older renewal line without the domain is rewritten, not duplicated."""
        fake_crontab.lines = ["0 1 * * * backup", "15 4 * * * /usr/bin/deployctl renew # deployctl-cert-renewal"]
        action = EnsureCronEntry(
            fake_crontab, "deployctl-cert-renewal", "0 3 * * * deployctl renew --domain example.com"
        )

        assert _run(action).status == StepStatus.APPLIED
        assert fake_crontab.lines == [
            "0 1 * * * backup",
            "0 3 * * * deployctl renew --domain example.com # deployctl-cert-renewal",
        ]


class TestFirewall:
    def test_rule_then_enable(self, fake_firewall):
        assert _run(EnsureFirewallRule(fake_firewall, "22/tcp")).status == StepStatus.APPLIED
        assert _run(EnsureFirewallRule(fake_firewall, "22/tcp")).status == StepStatus.SATISFIED
        assert _run(EnsureFirewallEnabled(fake_firewall)).status == StepStatus.APPLIED
        assert fake_firewall.rules == ["22/tcp"]
        assert fake_firewall.enabled


class TestEnsurePackage:
    def test_installs_missing_package(self, fake_packages):
        outcome = _run(EnsurePackage(fake_packages, "git"))

        assert outcome.status == StepStatus.APPLIED
        assert "git" in fake_packages.installed
        assert fake_packages.updates == 1

    def test_installed_package_untouched(self, fake_packages):
        fake_packages.installed.add("git")

        assert _run(EnsurePackage(fake_packages, "git")).status == StepStatus.SATISFIED
        assert fake_packages.updates == 0

    def test_unknown_package(self, fake_packages):
        fake_packages.broken.add("nonexistent")
        outcome = _run(EnsurePackage(fake_packages, "nonexistent"))

        assert outcome.status == StepStatus.FAILED
        assert "Unable to locate package" in outcome.detail
        assert outcome.remediation == "apt-get update && apt-get install -y nonexistent"


class TestEnsureBinary:
    def test_present_binary(self):
        with patch("shutil.which", return_value="/usr/bin/docker"):
            assert _run(EnsureBinary("docker", "curl -fsSL https://get.docker.com | sh")).status == (
                StepStatus.SATISFIED
            )

    def test_install_command_runs_in_shell(self):
        with (
            patch("shutil.which", side_effect=[None, "/usr/bin/docker"]),
            patch("deployctl.engine.actions.run_command", return_value=CommandResult(["sh"])) as run,
        ):
            outcome = _run(EnsureBinary("docker", "curl -fsSL https://get.docker.com | sh"))

        assert outcome.status == StepStatus.APPLIED
        run.assert_called_once_with(["sh", "-c", "curl -fsSL https://get.docker.com | sh"], timeout=1800)


class TestEnsureDirectory:
    def test_creates_nested_directory(self, tmp_path):
        target = tmp_path / "opt" / "app"
        assert _run(EnsureDirectory(target)).status == StepStatus.APPLIED
        assert target.is_dir()
        assert _run(EnsureDirectory(target)).status == StepStatus.SATISFIED


class TestEnsureEnvFile:
    """Tests for seeding environment files from templates."""

    def test_created_from_template_with_private_mode(self, tmp_path):
        template = tmp_path / "backend.env.example"
        template.write_text("DATABASE_URL=postgres://localhost/app\n")
        target = tmp_path / "backend" / ".env"

        outcome = _run(EnsureEnvFile(target, template))

        assert outcome.status == StepStatus.APPLIED
        assert target.read_text() == "DATABASE_URL=postgres://localhost/app\n"
        assert stat.S_IMODE(target.stat().st_mode) == 0o600

    def test_never_overwrites(self, tmp_path):
        """An operator-edited env file is left alone."""
        template = tmp_path / "backend.env.example"
        template.write_text("SECRET=changeme\n")
        target = tmp_path / ".env"
        target.write_text("SECRET=real-value\n")

        outcome = _run(EnsureEnvFile(target, template))

        assert outcome.status == StepStatus.SATISFIED
        assert target.read_text() == "SECRET=real-value\n"

    def test_missing_template_skipped(self, tmp_path):
        outcome = _run(EnsureEnvFile(tmp_path / ".env", tmp_path / "missing.example"))
        assert outcome.status == StepStatus.SKIPPED
        assert "template" in outcome.reason


class TestRequireFile:
    def test_missing_file_fails_with_remediation(self, tmp_path):
        outcome = _run(RequireFile(tmp_path / "compose.yml", remediation="deployctl provision"))

        assert outcome.status == StepStatus.FAILED
        assert outcome.remediation == "deployctl provision"


class TestEnsureNetwork:
    def test_created_once(self, fake_engine):
        assert _run(EnsureNetwork(fake_engine, "app-network")).status == StepStatus.APPLIED
        assert _run(EnsureNetwork(fake_engine, "app-network")).status == StepStatus.SATISFIED
        assert fake_engine.calls == ["network create app-network"]


class TestValidateComposeConfig:
    def test_valid(self, fake_runtime):
        assert _run(ValidateComposeConfig(fake_runtime)).status == StepStatus.SATISFIED

    def test_invalid(self, fake_runtime):
        fake_runtime.config_ok = False
        outcome = _run(ValidateComposeConfig(fake_runtime))

        assert outcome.status == StepStatus.FAILED
        assert "invalid" in outcome.detail
        assert "config" in outcome.remediation


class TestSyncRepository:
    """Tests for fast-forwarding component checkouts."""

    def _component(self, tmp_path: Path, required: bool = True) -> ComponentConfig:
        return ComponentConfig("backend", tmp_path / "backend", required=required)

    def test_up_to_date(self, tmp_path, fake_git):
        component = self._component(tmp_path)
        fake_git.add_repo(component.path, ["aaa111"])
        history = RevisionHistory(tmp_path / "revisions.json")
        ctx = RunContext()

        outcome = _run(SyncRepository(fake_git, component, history), ctx)

        assert outcome.status == StepStatus.SATISFIED
        assert ctx.changed == {}
        assert ctx.revisions_before == {"backend": "aaa111"}
        assert fake_git.calls == []

    def test_new_commit_recorded(self, tmp_path, fake_git):
        """A pulled commit is recorded along with the revision it replaced."""
        component = self._component(tmp_path)
        fake_git.add_repo(component.path, ["aaa111", "bbb222"])
        history = RevisionHistory(tmp_path / "revisions.json")
        ctx = RunContext()

        outcome = _run(SyncRepository(fake_git, component, history), ctx)

        assert outcome.status == StepStatus.APPLIED
        assert ctx.changed == {"backend": ("aaa111", "bbb222")}
        assert [r.commit_ref for r in history.revisions("backend")] == ["aaa111", "bbb222"]
        assert history.active("backend") == "bbb222"

    def test_conflict_fails(self, tmp_path, fake_git):
        component = self._component(tmp_path)
        repo = fake_git.add_repo(component.path, ["aaa111", "bbb222"])
        repo.conflict = True

        outcome = _run(SyncRepository(fake_git, component, RevisionHistory(tmp_path / "r.json")))

        assert outcome.status == StepStatus.FAILED
        assert "fast-forward" in outcome.detail
        assert "git pull origin main" in outcome.remediation

    def test_optional_component_without_checkout(self, tmp_path, fake_git):
        component = self._component(tmp_path, required=False)
        outcome = _run(SyncRepository(fake_git, component, RevisionHistory(tmp_path / "r.json")))

        assert outcome.status == StepStatus.SKIPPED

    def test_required_component_without_checkout(self, tmp_path, fake_git):
        component = self._component(tmp_path, required=True)
        outcome = _run(SyncRepository(fake_git, component, RevisionHistory(tmp_path / "r.json")))

        assert outcome.status == StepStatus.FAILED
        assert "not a git checkout" in outcome.detail


class TestCheckoutRevision:
    def test_checkout(self, tmp_path, fake_git):
        component = ComponentConfig("backend", tmp_path / "backend")
        fake_git.add_repo(component.path, ["aaa111", "bbb222"], head="bbb222")

        outcome = _run(CheckoutRevision(fake_git, component, "aaa111"))

        assert outcome.status == StepStatus.APPLIED
        assert fake_git.head(component.path) == "aaa111"

    def test_unknown_ref_skipped(self, tmp_path, fake_git):
        component = ComponentConfig("backend", tmp_path / "backend")
        fake_git.add_repo(component.path, ["aaa111"])

        outcome = _run(CheckoutRevision(fake_git, component, "deadbeef"))

        assert outcome.status == StepStatus.SKIPPED
        assert "deadbeef not found" in outcome.reason
        assert fake_git.calls == []


class TestCloneRepository:
    def test_clone(self, tmp_path, fake_git):
        component = ComponentConfig("devops", tmp_path / "devops", repo_url="git@example.com:org/devops.git")

        outcome = _run(CloneRepository(fake_git, component))

        assert outcome.status == StepStatus.APPLIED
        assert fake_git.calls == ["clone git@example.com:org/devops.git"]

    def test_no_url_skipped(self, tmp_path, fake_git):
        component = ComponentConfig("devops", tmp_path / "devops")
        outcome = _run(CloneRepository(fake_git, component))

        assert outcome.status == StepStatus.SKIPPED
        assert "no repository URL" in outcome.reason

    def test_non_empty_directory_not_clobbered(self, tmp_path, fake_git):
        component = ComponentConfig("devops", tmp_path / "devops", repo_url="git@example.com:org/devops.git")
        component.path.mkdir()
        (component.path / "notes.txt").write_text("keep me")

        outcome = _run(CloneRepository(fake_git, component))

        assert outcome.status == StepStatus.FAILED
        assert fake_git.calls == []
        assert (component.path / "notes.txt").exists()


class TestStartContainers:
    def test_running_stack_is_satisfied(self, fake_runtime):
        fake_runtime.running = set(fake_runtime.services)
        outcome = _run(StartContainers(fake_runtime, DeploymentProfile("default"), expected=3))

        assert outcome.status == StepStatus.SATISFIED
        assert fake_runtime.calls == []

    def test_restart_after_sync(self, fake_runtime):
        """New code means the running containers are stale."""
        fake_runtime.running = set(fake_runtime.services)
        ctx = RunContext()
        ctx.record_change("backend", "aaa111", "bbb222")

        outcome = _run(StartContainers(fake_runtime, DeploymentProfile("default"), expected=3), ctx)

        assert outcome.status == StepStatus.APPLIED
        assert fake_runtime.calls == ["pull", "up"]

    def test_dev_profile_builds_locally(self, fake_runtime):
        outcome = _run(StartContainers(fake_runtime, DeploymentProfile("dev", build_locally=True), expected=3))

        assert outcome.status == StepStatus.APPLIED
        assert fake_runtime.calls == ["up --build"]

    def test_edited_env_file_restarts_the_stack(self, fake_runtime, tmp_path):
        """Changing only the env file still brings the stack up again."""
        env_file = tmp_path / ".env"
        env_file.write_text("DB_PASSWORD=old\n")
        stamp = tmp_path / "state" / "compose.sha256"
        fake_runtime.running = set(fake_runtime.services)

        def action():
            return StartContainers(
                fake_runtime, DeploymentProfile("default"), expected=3, inputs=(env_file,), stamp_file=stamp
            )

        first = _run(action())
        second = _run(action())
        env_file.write_text("DB_PASSWORD=new\n")
        third = _run(action())

        assert first.status == StepStatus.APPLIED
        assert stamp.exists()
        assert second.status == StepStatus.SATISFIED
        assert third.status == StepStatus.APPLIED
        assert fake_runtime.calls == ["pull", "up", "pull", "up"]

    def test_profile_switch_restarts_the_stack(self, fake_runtime, tmp_path):
        compose_file = tmp_path / "docker-compose.prod.yml"
        compose_file.write_text("services: {}\n")
        stamp = tmp_path / "compose.sha256"

        _run(StartContainers(fake_runtime, DeploymentProfile("default"), 3, inputs=(compose_file,), stamp_file=stamp))
        outcome = _run(
            StartContainers(
                fake_runtime,
                DeploymentProfile("dev", build_locally=True),
                3,
                inputs=(compose_file,),
                stamp_file=stamp,
            )
        )

        assert outcome.status == StepStatus.APPLIED
        assert fake_runtime.calls == ["pull", "up", "up --build"]

    def test_failed_up_leaves_no_stamp(self, fake_runtime, tmp_path):
        stamp = tmp_path / "compose.sha256"
        fake_runtime.up_failures = 2

        outcome = _run(StartContainers(fake_runtime, DeploymentProfile("default"), 3, stamp_file=stamp))

        assert outcome.status == StepStatus.FAILED
        assert not stamp.exists()


class TestInputFingerprint:
    def test_missing_file_differs_from_empty(self, tmp_path):
        path = tmp_path / ".env"
        missing = input_fingerprint((path,))
        path.write_text("")

        assert input_fingerprint((path,)) != missing

    def test_salt_changes_the_digest(self, tmp_path):
        assert input_fingerprint((), salt="default") != input_fingerprint((), salt="dev")
