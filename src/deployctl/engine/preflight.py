"""Preflight checks.

Read-only verification of environment preconditions before any mutating
step runs. Every requirement is evaluated so an operator sees all missing
capabilities in one pass.
"""

from __future__ import annotations

import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from ..collaborators import run_command


class Requirement(ABC):
    """A single environment precondition."""

    kind: str = ""

    def __init__(self, name: str, remediation: str | None = None):
        self.name = name
        self.remediation = remediation

    @abstractmethod
    def is_satisfied(self) -> bool:
        """Evaluate the precondition without side effects."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class BinaryRequirement(Requirement):
    """An executable available on PATH."""

    kind = "binary"

    def __init__(self, binary: str, remediation: str | None = None):
        super().__init__(binary, remediation or f"Install {binary} (deployctl provision)")

    def is_satisfied(self) -> bool:
        return shutil.which(self.name) is not None


class CommandRequirement(Requirement):
    """A read-only command that must exit 0 (e.g. `docker compose version`)."""

    kind = "command"

    def __init__(self, args: list[str], remediation: str | None = None, timeout: float = 10.0):
        super().__init__(" ".join(args), remediation)
        self.args = args
        self.timeout = timeout

    def is_satisfied(self) -> bool:
        return run_command(self.args, timeout=self.timeout).ok


class FileRequirement(Requirement):
    """A file that must exist."""

    kind = "file"

    def __init__(self, path: Path, remediation: str | None = None):
        super().__init__(str(path), remediation)
        self.path = path

    def is_satisfied(self) -> bool:
        return self.path.is_file()


class DirectoryRequirement(Requirement):
    kind = "directory"

    def __init__(self, path: Path, remediation: str | None = None):
        super().__init__(str(path), remediation)
        self.path = path

    def is_satisfied(self) -> bool:
        return self.path.is_dir()


class PrivilegeRequirement(Requirement):
    """The process runs as root."""

    kind = "privilege"

    def __init__(self, remediation: str | None = "Re-run with sudo"):
        super().__init__("root", remediation)

    def is_satisfied(self) -> bool:
        return os.geteuid() == 0


@dataclass
class PreflightResult:
    """AllSatisfied when `missing` is empty, otherwise Missing(list)."""

    missing: list[Requirement] = field(default_factory=list)
    checked: int = 0

    @property
    def satisfied(self) -> bool:
        return not self.missing

    def describe(self) -> str:
        return "; ".join(f"{r.kind} {r.name}" for r in self.missing)

    def remediation(self) -> str:
        return "\n".join(f"{r.name}: {r.remediation}" for r in self.missing if r.remediation)


class PreflightChecker:
    """Evaluate a set of requirements."""

    def __init__(self, requirements: list[Requirement]):
        self.requirements = requirements

    def check(self) -> PreflightResult:
        """Evaluate every requirement; never stops at the first missing one."""
        missing = [r for r in self.requirements if not r.is_satisfied()]
        return PreflightResult(missing=missing, checked=len(self.requirements))
