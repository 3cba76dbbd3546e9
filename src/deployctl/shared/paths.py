"""Path management for deployctl.

Persisted state (run lock, run log, revision history) lives under a single
state directory, shared by every invocation on the host.
"""

from pathlib import Path

# Default state directory for all deployctl data
STATE_DIR = Path("/var/lib/deployctl")

# Per-user config directory (searched after ./deployctl.yaml)
USER_CONFIG_DIR = Path.home() / ".deployctl"

LOCK_FILE_NAME = "deploy.lock"
REPORT_LOG_NAME = "runs.jsonl"
HISTORY_FILE_NAME = "revisions.json"
RENEW_LOG_NAME = "renew.log"
COMPOSE_STAMP_NAME = "compose.sha256"


def ensure_state_dir(state_dir: Path) -> Path:
    """Create the state directory if missing (mode 0o700)."""
    state_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    return state_dir


def lock_file(state_dir: Path) -> Path:
    return state_dir / LOCK_FILE_NAME


def report_log_file(state_dir: Path) -> Path:
    return state_dir / REPORT_LOG_NAME


def history_file(state_dir: Path) -> Path:
    return state_dir / HISTORY_FILE_NAME


def renew_log_file(state_dir: Path) -> Path:
    return state_dir / RENEW_LOG_NAME


def compose_stamp_file(state_dir: Path) -> Path:
    """Fingerprint of the compose and env files the running stack was started from."""
    return state_dir / COMPOSE_STAMP_NAME
