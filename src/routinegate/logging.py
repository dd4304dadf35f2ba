"""Structured logging helpers bound to transaction context."""

from __future__ import annotations

import logging
from typing import cast

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars


def configure_logging(level: str, *, json: bool = True) -> None:
    """Configure structlog with JSON (or console) output."""
    level_name = level.upper()
    numeric_level = logging.getLevelNamesMapping().get(level_name, logging.INFO)

    logging.basicConfig(format="%(message)s", level=numeric_level)

    renderer: structlog.types.Processor
    if json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_tool_call(tool_name: str, call_id: str) -> None:
    """Bind the tool call being served into the logging context."""
    bind_contextvars(tool=tool_name, call_id=call_id)


def clear_logging_context() -> None:
    """Drop every bound context variable."""
    clear_contextvars()


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Return a structured logger."""
    return cast(structlog.BoundLogger, structlog.get_logger(name))
