"""Docker engine operations outside the compose project.

Networks, image pruning and the disk usage measurement used by the
disk-pressure guard.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from .shell import CommandResult, run_command


class DockerEngine:
    """Host-level Docker operations."""

    def network_exists(self, name: str) -> bool:
        return run_command(["docker", "network", "inspect", name], timeout=30).ok

    def create_network(self, name: str) -> CommandResult:
        return run_command(["docker", "network", "create", name], timeout=60)

    def dangling_images(self) -> list[str]:
        """IDs of untagged images left behind by previous builds and pulls."""
        result = run_command(
            ["docker", "image", "ls", "--filter", "dangling=true", "--quiet"],
            timeout=60,
        )
        if not result.ok:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]

    def prune_images(self) -> CommandResult:
        """Remove dangling images."""
        return run_command(["docker", "image", "prune", "-f"], timeout=600)

    def prune_system(self) -> CommandResult:
        """Remove all unused images, containers, networks and volumes."""
        return run_command(["docker", "system", "prune", "-af", "--volumes"], timeout=1800)

    def disk_usage_percent(self, path: Path | str = "/") -> float:
        """Used space on the filesystem holding `path`, in percent."""
        usage = shutil.disk_usage(str(path))
        return usage.used / usage.total * 100.0
