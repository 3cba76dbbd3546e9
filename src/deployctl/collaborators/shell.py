"""Subprocess execution for external tools.

Collaborators never raise for a failed command. They return a
CommandResult so the caller can capture exit status and stderr.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from ..shared.logging import get_logger

logger = get_logger(__name__)

# Conventional exit statuses for failures that never reached the tool
EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = 124


@dataclass
class CommandResult:
    """Outcome of one external command."""

    args: list[str] = field(default_factory=list)
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, lines: int = 10) -> str:
        """Last lines of stderr (falling back to stdout) for diagnostics."""
        text = self.stderr.strip() or self.stdout.strip()
        return "\n".join(text.splitlines()[-lines:])

    def describe(self) -> str:
        """One-line summary: command, exit status and stderr tail."""
        command = " ".join(self.args)
        tail = self.tail(5)
        summary = f"`{command}` exited {self.returncode}"
        return f"{summary}: {tail}" if tail else summary


def run_command(
    args: list[str],
    cwd: Path | str | None = None,
    timeout: float | None = None,
    input: str | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command and capture its output.

    Args:
        args: Command and arguments
        cwd: Working directory
        timeout: Seconds before the command is killed
        input: Text passed on stdin
        env: Full environment for the child (inherits when None)

    Returns:
        CommandResult; 127 if the binary is missing, 124 on timeout.
    """
    logger.debug("command.run", args=args, cwd=str(cwd) if cwd else None)
    try:
        result = subprocess.run(
            args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input,
            env=env,
        )
    except FileNotFoundError:
        return CommandResult(args, EXIT_NOT_FOUND, stderr=f"{args[0]}: command not found")
    except subprocess.TimeoutExpired:
        return CommandResult(args, EXIT_TIMEOUT, stderr=f"timed out after {timeout}s")

    if result.returncode != 0:
        logger.debug("command.failed", args=args, returncode=result.returncode)
    return CommandResult(args, result.returncode, result.stdout or "", result.stderr or "")
