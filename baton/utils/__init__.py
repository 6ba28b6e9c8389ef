"""Logging setup for Baton: one structlog pipeline, console or JSON."""

import sys
from typing import TextIO

import structlog
from baton.config import settings

LOG_FORMATS = ("console", "json")

_LEVELS = {"debug": 10, "info": 20, "warning": 30, "warn": 30, "error": 40, "critical": 50}


def setup_logging(
    log_format: str | None = None,
    log_level: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog from ``settings.log_format`` / ``settings.log_level``.

    ``console`` renders human-readable lines (colored only on a terminal);
    ``json`` emits one object per line with structured tracebacks, for
    shipping engine and provider events to a collector. Logs go to stderr
    so the CLI's tables on stdout stay clean.

    Raises:
        ValueError: unknown log format.
    """
    fmt = (log_format or settings.log_format).lower()
    if fmt not in LOG_FORMATS:
        raise ValueError(f"Unknown log format {fmt!r}; expected one of {LOG_FORMATS}")
    out = stream or sys.stderr
    level = _LEVELS.get((log_level or settings.log_level).lower(), 20)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors += [
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(colors=out.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=out),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Logger bound to a Baton component (``provider``, ``core.engine``...)."""
    log = structlog.get_logger()
    if name:
        log = log.bind(component=name)
    return log
