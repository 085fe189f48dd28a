"""structlog setup and the logging sink used by external callers."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

_SECRET_MARKERS = ("token", "secret", "password")


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask any event value whose key looks like a credential."""
    for key in list(event_dict):
        if key == "event":
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_MARKERS) and event_dict[key] is not None:
            event_dict[key] = "***"
    return event_dict


def _stderr_logger(*args: Any) -> structlog.PrintLogger:
    return structlog.PrintLogger(sys.stderr)


def configure_logging(level: str = "warning", json_output: bool = False) -> None:
    """Install the process-wide structlog configuration.

    Log lines are written to stderr; stdout carries command output only.
    """
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.WARNING)
        ),
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )


def emit(level: str, component: str, message: str, data: dict[str, Any] | None = None) -> None:
    """Log sink accepting (level, component, message, data)."""
    log = structlog.get_logger(component=component)
    method = getattr(log, level.lower(), None)
    if method is None:
        method = log.info
    method(message, **(data or {}))
