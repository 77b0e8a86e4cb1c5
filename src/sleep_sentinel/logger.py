"""Structured logging configuration using *structlog*."""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(level: str = "INFO") -> None:
    """Configure *structlog* processors and the stdlib level for third-party loggers.

    Call once at application startup.  Evaluation traces are emitted at
    ``DEBUG``; decisions and alerts at ``INFO``.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if sys.stderr.isatty():
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        # JSON output needs tracebacks pre-rendered into the event dict.
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # httpx and uvicorn log through the stdlib.
    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr, level=numeric_level)
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))
