"""Host subsystems: package manager, firewall and crontab."""

from __future__ import annotations

import os

from .shell import CommandResult, run_command


class AptPackageManager:
    """Debian/Ubuntu package manager."""

    def __init__(self):
        self._index_fresh = False

    def is_installed(self, name: str) -> bool:
        result = run_command(["dpkg-query", "-W", "-f=${Status}", name], timeout=30)
        return result.ok and "install ok installed" in result.stdout

    def update(self) -> CommandResult:
        """Refresh the package index, at most once per process."""
        if self._index_fresh:
            return CommandResult(["apt-get", "update"])
        result = run_command(["apt-get", "update", "-qq"], timeout=600, env=self._env())
        self._index_fresh = result.ok
        return result

    def install(self, name: str) -> CommandResult:
        return run_command(
            ["apt-get", "install", "-y", "-qq", name],
            timeout=900,
            env=self._env(),
        )

    def _env(self) -> dict[str, str]:
        return {**os.environ, "DEBIAN_FRONTEND": "noninteractive"}


class UfwFirewall:
    """Uncomplicated Firewall."""

    def _status(self) -> str:
        result = run_command(["ufw", "status"], timeout=30)
        return result.stdout if result.ok else ""

    def is_enabled(self) -> bool:
        return "Status: active" in self._status()

    def has_rule(self, rule: str) -> bool:
        """Whether an ALLOW rule for `rule` (e.g. "80/tcp" or "22") exists."""
        for line in self._status().splitlines():
            fields = line.split()
            if len(fields) >= 2 and fields[0] == rule and fields[1] == "ALLOW":
                return True
        return False

    def allow(self, rule: str) -> CommandResult:
        return run_command(["ufw", "allow", rule], timeout=30)

    def enable(self) -> CommandResult:
        return run_command(["ufw", "--force", "enable"], timeout=30)


class Crontab:
    """The invoking user's crontab."""

    def entries(self) -> list[str]:
        result = run_command(["crontab", "-l"], timeout=30)
        # `crontab -l` exits 1 when the user has no crontab yet
        if not result.ok:
            return []
        return result.stdout.splitlines()

    def replace_marked(self, marker: str, line: str) -> CommandResult:
        """Install `line`, dropping any existing entry that carries `marker`."""
        lines = [entry for entry in self.entries() if entry.strip() and marker not in entry]
        lines.append(line)
        return run_command(["crontab", "-"], input="\n".join(lines) + "\n", timeout=30)
