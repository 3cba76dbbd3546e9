"""Version control operations on component checkouts."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from .shell import CommandResult, run_command

GIT_TIMEOUT = 300.0


class PullResult(Enum):
    """Outcome of updating a checkout from its remote branch."""

    UPDATED = "updated"
    UP_TO_DATE = "up_to_date"
    CONFLICT = "conflict"


class GitClient:
    """Thin wrapper over the git command line."""

    def _git(self, dest: Path, *args: str, timeout: float = GIT_TIMEOUT) -> CommandResult:
        return run_command(["git", "-C", str(dest), *args], timeout=timeout)

    def is_repository(self, dest: Path) -> bool:
        return (dest / ".git").exists()

    def clone(self, url: str, dest: Path, branch: str | None = None) -> CommandResult:
        args = ["git", "clone"]
        if branch:
            args.extend(["--branch", branch])
        args.extend([url, str(dest)])
        return run_command(args, timeout=GIT_TIMEOUT)

    def head(self, dest: Path) -> str | None:
        """Commit currently checked out, or None if unknown."""
        result = self._git(dest, "rev-parse", "HEAD", timeout=30)
        return result.stdout.strip() if result.ok else None

    def remote_head(self, dest: Path, branch: str) -> str | None:
        """Commit at the tip of the remote branch, without touching the checkout."""
        result = self._git(dest, "ls-remote", "origin", f"refs/heads/{branch}", timeout=60)
        if not result.ok or not result.stdout.strip():
            return None
        return result.stdout.split()[0]

    def resolve(self, dest: Path, ref: str) -> str | None:
        """Resolve a ref (hash, tag, HEAD~1) to a commit, or None if unknown here."""
        result = self._git(dest, "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", timeout=30)
        return result.stdout.strip() if result.ok and result.stdout.strip() else None

    def pull(self, dest: Path, branch: str) -> tuple[PullResult, CommandResult]:
        """Fast-forward the checkout to the remote branch.

        Returns:
            Tuple of (PullResult, the pull CommandResult).
        """
        before = self.head(dest)
        result = self._git(dest, "pull", "--ff-only", "origin", branch)
        if not result.ok:
            return PullResult.CONFLICT, result
        after = self.head(dest)
        if before == after:
            return PullResult.UP_TO_DATE, result
        return PullResult.UPDATED, result

    def checkout(self, dest: Path, ref: str) -> CommandResult:
        return self._git(dest, "checkout", "--quiet", ref)

    def log(self, dest: Path, count: int = 5) -> list[str]:
        """Recent commits as `<short hash> <subject>` lines."""
        result = self._git(dest, "log", "--oneline", f"-{count}", timeout=30)
        return result.stdout.splitlines() if result.ok else []
