"""Logging configuration for deployctl.

Interactive commands render structlog events to stderr for a human. With
`--log-file` (the scheduled `renew` run uses it) events are appended to the
file as one JSON object per line instead. Either way, values read from the
deployment env files are masked before anything is rendered.
"""

import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from .envfile import REDACTED

Redact = Callable[[str | None], str | None]


def _redaction_processor(redact: Redact) -> structlog.types.Processor:
    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key, value in event_dict.items():
            if isinstance(value, str) and value != REDACTED:
                event_dict[key] = redact(value)
        return event_dict

    return processor


def _handler(log_file: str | Path | None) -> logging.Handler:
    if not log_file:
        return logging.StreamHandler(sys.stderr)
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    return logging.FileHandler(str(path))


def configure_logging(
    level: str = "warning",
    log_file: str | Path | None = None,
    redact: Redact | None = None,
) -> None:
    """Configure stdlib logging and structlog for one CLI invocation.

    May be called again once the config is loaded, to add redaction.

    Args:
        level: Log level (debug, info, warning, error, critical)
        log_file: Append JSON lines here instead of rendering to stderr
        redact: Masks secret values in string fields of every event
    """
    log_level = getattr(logging, level.upper(), logging.WARNING)
    handler = _handler(log_file)
    handler.setLevel(log_level)
    logging.basicConfig(level=log_level, handlers=[handler], format="%(message)s", force=True)

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    if redact is not None:
        processors.append(_redaction_processor(redact))
    processors.append(structlog.processors.JSONRenderer() if log_file else structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfiguration after config load must reach loggers already in use
        cache_logger_on_first_use=False,
    )


def log_level_for(verbose: int, log_file: str | Path | None = None) -> str:
    """Map the CLI -v count to a level; file logging records info by default."""
    if verbose >= 2:
        return "debug"
    if verbose == 1 or log_file:
        return "info"
    return "warning"


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)
