"""Structured logging configuration using structlog."""

import logging
import sys

import structlog
from structlog.types import Processor


def configure_logging(
    log_level: str = "INFO",
    format_as_json: bool = True,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_as_json: If True, output logs as JSON; otherwise use console format
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if format_as_json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def redact(identifier: str | None, visible: int = 6) -> str:
    """Shorten an external identifier for logging.

    Full external identifiers and secrets never reach the logs; only a short
    prefix is kept so related lines can still be correlated.
    """
    if not identifier:
        return "<none>"
    if len(identifier) <= visible:
        return "*" * len(identifier)
    return f"{identifier[:visible]}..."
