"""Structured logging configuration using structlog.

Console output in development, JSON lines otherwise. Engine events use
dotted names ("escrow.funded", "dispute.resolved") with keyword context.
While an engine operation runs, ``escrow_context`` binds its name and the
escrow id so every line logged underneath (repository, trust ledger)
carries them too.

Release PINs must never reach a log sink: ``redact_secrets`` masks any
event key that could hold one, whoever logged it.

Usage:
    from spaza_escrow.logging_config import setup_logging, get_logger
    setup_logging(log_level="DEBUG", json_logs=False)
    logger = get_logger(__name__)
    logger.info("escrow.created", escrow_id="abc-123", amount="1500")
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from contextlib import AbstractContextManager

SECRET_KEYS = frozenset({"pin", "release_pin", "release_pin_hash"})
REDACTED = "***"


def redact_secrets(
    logger: Any, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Mask PIN material in an event."""
    for key in SECRET_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def escrow_context(operation: str, escrow_id: object = None) -> AbstractContextManager:
    """Bind the running engine operation to every log line emitted inside it."""
    return structlog.contextvars.bound_contextvars(
        operation=operation,
        escrow_id=None if escrow_id is None else str(escrow_id),
    )


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog and route it through the stdlib root logger.

    Args:
        log_level: Standard Python log level string (DEBUG, INFO, WARNING, etc.)
        json_logs: If True, render JSON lines. If False, colored console.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        redact_secrets,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    # stdout is reserved for CLI results
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for noisy_logger in ("sqlalchemy.engine", "aiosqlite"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger; pass ``__name__`` from the calling module."""
    return structlog.get_logger(name)
