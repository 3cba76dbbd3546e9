"""Unit tests for host collaborators (subprocess calls are mocked)."""

from __future__ import annotations

import json
import subprocess
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from deployctl.collaborators import (
    AptPackageManager,
    CertbotClient,
    CommandResult,
    ComposeRuntime,
    Crontab,
    DockerEngine,
    GitClient,
    ProxyController,
    PullResult,
    StackState,
    UfwFirewall,
    parse_openssl_enddate,
    parse_ps_output,
    run_command,
)


class TestCommandResult:
    def test_ok(self):
        assert CommandResult(["true"]).ok
        assert not CommandResult(["false"], 1).ok

    def test_tail_prefers_stderr(self):
        result = CommandResult(["x"], 1, stdout="out", stderr="a\nb\nc\n")
        assert result.tail(2) == "b\nc"

    def test_tail_falls_back_to_stdout(self):
        assert CommandResult(["x"], 1, stdout="only stdout\n").tail() == "only stdout"

    def test_describe(self):
        result = CommandResult(["docker", "compose", "up"], 1, stderr="Error: port is already allocated")
        assert result.describe() == "`docker compose up` exited 1: Error: port is already allocated"
        assert CommandResult(["true"]).describe() == "`true` exited 0"


class TestRunCommand:
    """Tests for run_command."""

    def test_captures_output(self):
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="hello\n", stderr="")
            result = run_command(["echo", "hello"], timeout=5)

        assert result.ok
        assert result.stdout == "hello\n"
        mock_run.assert_called_once()
        assert mock_run.call_args.kwargs["timeout"] == 5

    def test_missing_binary(self):
        with patch("subprocess.run", side_effect=FileNotFoundError()):
            result = run_command(["docker", "ps"])

        assert result.returncode == 127
        assert "docker: command not found" in result.stderr

    def test_timeout(self):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["certbot"], 300)):
            result = run_command(["certbot", "renew"], timeout=300)

        assert result.returncode == 124
        assert "timed out" in result.stderr


class TestParsePsOutput:
    def test_json_lines(self):
        output = "\n".join(
            json.dumps(r)
            for r in (
                {"Name": "app-nginx-1", "Service": "nginx", "State": "running"},
                {"Name": "app-backend-1", "Service": "backend", "State": "exited"},
            )
        )
        containers = parse_ps_output(output)

        assert [(c.service, c.running) for c in containers] == [("nginx", True), ("backend", False)]

    def test_json_array(self):
        output = json.dumps([{"Name": "app-db-1", "Service": "db", "State": "Running"}])
        assert parse_ps_output(output)[0].running

    def test_empty_and_garbage(self):
        assert parse_ps_output("") == []
        assert parse_ps_output("not json") == []


class TestComposeRuntime:
    """Tests for ComposeRuntime."""

    def test_up_arguments(self, tmp_path):
        runtime = ComposeRuntime(tmp_path / "docker-compose.prod.yml", profile="local-db")
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
            runtime.up(build=True)

        args = mock_run.call_args.args[0]
        assert args == [
            "docker",
            "compose",
            "--profile",
            "local-db",
            "-f",
            str(tmp_path / "docker-compose.prod.yml"),
            "up",
            "-d",
            "--build",
            "--remove-orphans",
        ]
        assert mock_run.call_args.kwargs["cwd"] == tmp_path

    def test_status_without_compose_file(self, tmp_path):
        runtime = ComposeRuntime(tmp_path / "missing.yml")
        status = runtime.status()
        assert status.state == StackState.NOT_FOUND

    def test_status_partial(self, tmp_path):
        compose_file = tmp_path / "docker-compose.prod.yml"
        compose_file.write_text("services: {}\n")
        output = "\n".join(
            json.dumps(r)
            for r in (
                {"Name": "a", "Service": "nginx", "State": "running"},
                {"Name": "b", "Service": "backend", "State": "restarting"},
            )
        )
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout=output, stderr="")
            status = ComposeRuntime(compose_file).status()

        assert status.state == StackState.PARTIAL
        assert status.running_services == ["nginx"]
        assert status.stopped_services == ["backend"]

    def test_proxy_reload_uses_exec(self, tmp_path):
        proxy = ProxyController(ComposeRuntime(tmp_path / "c.yml"), "nginx")
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
            proxy.reload()

        assert mock_run.call_args.args[0][-5:] == ["-T", "nginx", "nginx", "-s", "reload"]


class TestGitClient:
    """Tests for GitClient.pull outcomes."""

    def test_updated(self, tmp_path):
        with patch("subprocess.run") as mock_run:
            mock_run.side_effect = [
                MagicMock(returncode=0, stdout="aaa111\n", stderr=""),
                MagicMock(returncode=0, stdout="", stderr=""),
                MagicMock(returncode=0, stdout="bbb222\n", stderr=""),
            ]
            outcome, _ = GitClient().pull(tmp_path, "main")

        assert outcome == PullResult.UPDATED

    def test_up_to_date(self, tmp_path):
        with patch("subprocess.run") as mock_run:
            mock_run.side_effect = [
                MagicMock(returncode=0, stdout="aaa111\n", stderr=""),
                MagicMock(returncode=0, stdout="Already up to date.", stderr=""),
                MagicMock(returncode=0, stdout="aaa111\n", stderr=""),
            ]
            outcome, _ = GitClient().pull(tmp_path, "main")

        assert outcome == PullResult.UP_TO_DATE

    def test_conflict(self, tmp_path):
        with patch("subprocess.run") as mock_run:
            mock_run.side_effect = [
                MagicMock(returncode=0, stdout="aaa111\n", stderr=""),
                MagicMock(returncode=128, stdout="", stderr="fatal: Not possible to fast-forward"),
            ]
            outcome, result = GitClient().pull(tmp_path, "main")

        assert outcome == PullResult.CONFLICT
        assert "fast-forward" in result.stderr

    def test_remote_head(self, tmp_path):
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="bbb222\trefs/heads/main\n", stderr="")
            assert GitClient().remote_head(tmp_path, "main") == "bbb222"

    def test_resolve_unknown(self, tmp_path):
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="")
            assert GitClient().resolve(tmp_path, "nope") is None

    def test_is_repository(self, tmp_path):
        assert not GitClient().is_repository(tmp_path)
        (tmp_path / ".git").mkdir()
        assert GitClient().is_repository(tmp_path)


class TestCertbot:
    def test_renew_forces_the_named_certificate(self):
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
            CertbotClient().renew("example.com", timeout=300)

        assert mock_run.call_args.args[0] == [
            "certbot",
            "renew",
            "--cert-name",
            "example.com",
            "--force-renewal",
            "--quiet",
        ]

    def test_parse_openssl_enddate(self):
        parsed = parse_openssl_enddate("notAfter=Jan  5 12:00:00 2027 GMT\n")
        assert parsed == datetime(2027, 1, 5, 12, 0, tzinfo=timezone.utc)

    def test_parse_garbage(self):
        assert parse_openssl_enddate("") is None
        assert parse_openssl_enddate("notAfter=soon") is None


class TestDockerEngine:
    def test_dangling_images(self):
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="sha256:a\nsha256:b\n", stderr="")
            assert DockerEngine().dangling_images() == ["sha256:a", "sha256:b"]

    def test_disk_usage(self, tmp_path):
        usage = DockerEngine().disk_usage_percent(tmp_path)
        assert 0.0 <= usage <= 100.0


class TestHostSubsystems:
    """Tests for apt, ufw and crontab wrappers."""

    def test_apt_update_once_per_process(self):
        packages = AptPackageManager()
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
            packages.update()
            packages.update()

        assert mock_run.call_count == 1
        assert mock_run.call_args.kwargs["env"]["DEBIAN_FRONTEND"] == "noninteractive"

    def test_apt_failed_update_retried(self):
        packages = AptPackageManager()
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=100, stdout="", stderr="E: network")
            packages.update()
            packages.update()

        assert mock_run.call_count == 2

    def test_ufw_has_rule(self):
        status = "Status: active\n\nTo                         Action      From\n--\n22/tcp                     ALLOW       Anywhere\n"
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout=status, stderr="")
            firewall = UfwFirewall()
            assert firewall.has_rule("22/tcp")
            assert not firewall.has_rule("443/tcp")
            assert firewall.is_enabled()

    def test_empty_crontab(self):
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="no crontab for root")
            assert Crontab().entries() == []

    def test_crontab_replace_marked_keeps_other_entries(self):
        existing = "0 1 * * * backup\n0 2 * * * deployctl renew # renewal\n"
        with patch("subprocess.run") as mock_run:
            mock_run.side_effect = [
                MagicMock(returncode=0, stdout=existing, stderr=""),
                MagicMock(returncode=0, stdout="", stderr=""),
            ]
            Crontab().replace_marked("# renewal", "0 3 * * * deployctl renew --domain example.com # renewal")

        assert mock_run.call_args.kwargs["input"] == (
            "0 1 * * * backup\n0 3 * * * deployctl renew --domain example.com # renewal\n"
        )
