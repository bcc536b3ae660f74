"""Structured logging configuration using structlog.

JSON output for services and a console renderer for interactive use. Loggers
are created per module and log event names with key/value context, e.g.
``logger.info("step_completed", step=2, tool="send_email")``.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, List, cast

import structlog

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _stderr_logger(*_: Any) -> structlog.PrintLogger:
    # sys.stderr may be swapped after configuration.
    return structlog.PrintLogger(sys.stderr)


def setup_logging(level: str = "INFO", format: str = "console") -> None:
    """Configure structlog for the process.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: ``"json"`` for machine-readable output, anything else for the
            colored console renderer
    """
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(LEVELS.get(level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to ``name``."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))


def bind_context(**values: Any) -> None:
    """Attach values (session id, schedule id...) to every log line in this context."""
    structlog.contextvars.bind_contextvars(**values)
