"""Structured logging configuration using structlog.

JSON output outside development, colored console output in development.
Every entry carries the request_id bound by the request middleware, so a
webhook delivery can be followed from signature check to escrow creation.

Gateway secrets and signatures must never reach the logs; the redaction
processor masks them wherever they appear as event keys.

Usage:
    from escrow_ledger.logging_config import setup_logging, get_logger
    setup_logging(log_level="DEBUG", json_logs=False)
    logger = get_logger()
    logger.info("escrow.created", escrow_id="abc-123", amount="5000.00")
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

REDACTED = "***"

_SENSITIVE_KEYS = frozenset(
    {
        "signature",
        "secret",
        "secret_key",
        "authorization",
        "x_paystack_signature",
        "paystack_secret_key",
        "paystack_webhook_secret",
    }
)


def redact_sensitive(
    logger: Any, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Mask values of keys that hold credentials or webhook signatures."""
    for key in event_dict.keys() & _SENSITIVE_KEYS:
        event_dict[key] = REDACTED
    return event_dict


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False) -> None:
    """Configure structlog and route the standard library through it.

    Args:
        log_level: Standard Python log level string (DEBUG, INFO, WARNING, etc.)
        json_logs: If True, output JSON lines. If False, colored console.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

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

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.DEBUG))

    for noisy_logger in (
        "uvicorn.access",
        "sqlalchemy.engine",
        "aiosqlite",
        "httpx",
        "httpcore",
    ):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Optional logger name. If None, uses the calling module's name.
    """
    return structlog.get_logger(name)
