"""Structured logging with per-pass correlation.

Uses structlog for structured logging with JSON or console output.  Module
loggers stay plain ``logging.getLogger(__name__)``; their records are routed
through the same structlog processor chain, so every line emitted during a
reconciliation pass carries that pass's ``pass_id``.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

import structlog

# Context var for pass_id propagation
_pass_id: ContextVar[str] = ContextVar("pass_id", default="")


def get_pass_id() -> str:
    """Current pass id, or ``""`` outside a pass."""
    return _pass_id.get()


@contextmanager
def pass_context(pass_id: str | None = None) -> Iterator[str]:
    """Bind a pass id for the duration of the block."""
    pid = pass_id or str(uuid.uuid4())
    token = _pass_id.set(pid)
    try:
        yield pid
    finally:
        _pass_id.reset(token)


def _add_pass_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor: add pass_id when a pass is active."""
    pid = _pass_id.get()
    if pid:
        event_dict["pass_id"] = pid
    return event_dict


def setup_logging(
    level: str = "INFO",
    format: str = "json",
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        format: "json" for production, "console" for development.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _add_pass_id,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    final: list[Any] = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if format == "json":
        final += [
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ]
    else:
        final.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=final,
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)
    # Quiet chatty dependencies
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))
    logging.getLogger("aiosqlite").setLevel(max(log_level, logging.WARNING))
