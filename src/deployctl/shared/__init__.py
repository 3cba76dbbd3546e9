"""Shared modules for deployctl.

This module provides functionality used by every command:
- Logging configuration
- State directory layout
- Environment file parsing and secret redaction
"""

from .envfile import Redactor, parse_env_file
from .logging import configure_logging, get_logger, log_level_for
from .paths import (
    STATE_DIR,
    USER_CONFIG_DIR,
    compose_stamp_file,
    ensure_state_dir,
    history_file,
    lock_file,
    renew_log_file,
    report_log_file,
)

__all__ = [
    # Paths
    "STATE_DIR",
    "USER_CONFIG_DIR",
    "ensure_state_dir",
    "lock_file",
    "report_log_file",
    "history_file",
    "renew_log_file",
    "compose_stamp_file",
    # Logging
    "configure_logging",
    "get_logger",
    "log_level_for",
    # Environment files
    "parse_env_file",
    "Redactor",
]
