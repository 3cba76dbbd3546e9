"""Persisted state shared across runs.

- RevisionHistory: per-component revisions, oldest first, with a pointer to
  the active one. Entries are only ever appended; rolling back moves the
  pointer so a forward-roll stays possible.
- ReportLog: append-only JSON-lines log of finalized RunReports.
"""

from __future__ import annotations

import fcntl
import json
import os
from pathlib import Path
from typing import Any

from ..shared.envfile import Redactor
from .models import Revision, RunReport, utcnow


class RevisionHistory:
    """Revision history for the tracked components."""

    def __init__(self, path: Path):
        self.path = path

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"components": {}}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError):
            return {"components": {}}
        data.setdefault("components", {})
        return data

    def _save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, self.path)

    def _entry(self, data: dict[str, Any], component: str) -> dict[str, Any]:
        return data["components"].setdefault(component, {"revisions": [], "active": None})

    def components(self) -> list[str]:
        return list(self._load()["components"])

    def revisions(self, component: str) -> list[Revision]:
        entry = self._load()["components"].get(component, {})
        return [Revision(component, r["commit_ref"]) for r in entry.get("revisions", [])]

    def active(self, component: str) -> str | None:
        entry = self._load()["components"].get(component)
        if not entry or entry.get("active") is None:
            return None
        return entry["revisions"][entry["active"]]["commit_ref"]

    def previous(self, component: str) -> str | None:
        """The revision recorded immediately before the active one."""
        entry = self._load()["components"].get(component)
        if not entry or entry.get("active") is None:
            return None
        current = entry["revisions"][entry["active"]]["commit_ref"]
        for record in reversed(entry["revisions"][: entry["active"]]):
            if record["commit_ref"] != current:
                return record["commit_ref"]
        return None

    def record(self, component: str, commit_ref: str) -> None:
        """Record a newly active revision (no-op if it is already active)."""
        data = self._load()
        entry = self._entry(data, component)
        revisions = entry["revisions"]
        if entry["active"] is not None and revisions[entry["active"]]["commit_ref"] == commit_ref:
            return
        revisions.append({"commit_ref": commit_ref, "recorded_at": utcnow().isoformat()})
        entry["active"] = len(revisions) - 1
        self._save(data)

    def ensure_baseline(self, component: str, commit_ref: str) -> None:
        """Record `commit_ref` as the first revision if nothing is recorded yet."""
        if self.active(component) is None:
            self.record(component, commit_ref)

    def set_active(self, component: str, commit_ref: str) -> None:
        """Point the component at an existing revision, appending it if unknown."""
        data = self._load()
        entry = self._entry(data, component)
        revisions = entry["revisions"]
        for index in range(len(revisions) - 1, -1, -1):
            if revisions[index]["commit_ref"] == commit_ref:
                entry["active"] = index
                self._save(data)
                return
        revisions.append({"commit_ref": commit_ref, "recorded_at": utcnow().isoformat()})
        entry["active"] = len(revisions) - 1
        self._save(data)


class ReportLog:
    """Append-only log of run reports."""

    def __init__(self, path: Path, redactor: Redactor | None = None):
        self.path = path
        self.redactor = redactor or Redactor()

    def append(self, report: RunReport) -> None:
        """Append a finalized report as one JSON line, secrets redacted."""
        if not report.finalized:
            raise ValueError(f"Run report {report.run_id} is not finalized")
        line = self.redactor(json.dumps(report.to_dict()))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(line + "\n")
                f.flush()
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def recent(self, limit: int = 10) -> list[dict[str, Any]]:
        """Most recent reports, newest last."""
        if not self.path.exists():
            return []
        reports = []
        for line in self.path.read_text().splitlines():
            if not line.strip():
                continue
            try:
                reports.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return reports[-limit:]
