"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Iterator

import structlog


def setup_logging(level: str = "INFO") -> None:
    """Configure structlog with console output on stderr."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a named logger instance."""
    return structlog.get_logger(name)


@contextmanager
def turn_context(conversation_id: str, turn_id: str) -> Iterator[None]:
    """Bind conversation and turn ids to every log line emitted inside the block."""
    tokens = structlog.contextvars.bind_contextvars(
        conversation_id=conversation_id,
        turn_id=turn_id,
    )
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
