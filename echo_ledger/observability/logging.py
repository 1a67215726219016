"""
Structured Logging with Structlog.

JSON logs carrying the request id and echo app id bound by the HTTP
middleware. Money and ids are rendered as exact strings, and credential
fields never reach the output.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from structlog.types import EventDict, Processor

from echo_ledger.config import settings

# Event keys whose values are credentials or derived from them
REDACTED_KEYS = frozenset(
    {"access_token", "refresh_token", "token", "token_hash", "jwt_secret", "authorization"}
)
REDACTED = "[redacted]"

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "uvicorn.access", "asyncio")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp every entry with the service name, version and environment."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    event_dict["environment"] = settings.environment
    return event_dict


def redact_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace credential values with a marker."""
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def render_ledger_values(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Render Decimal and UUID values as strings so JSON output keeps them exact."""
    for key, value in event_dict.items():
        if isinstance(value, (Decimal, UUID)):
            event_dict[key] = str(value)
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog on top of the stdlib logging module.

    A JSON entry looks like:
    {
        "event": "transaction_recorded",
        "level": "info",
        "timestamp": "2025-01-08T12:00:00.123456Z",
        "logger": "echo_ledger.services.ledger",
        "service": "echo-ledger-api",
        "request_id": "req-123",
        "echo_app_id": "6f1c...",
        "total_cost": "0.1150000000"
    }
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    if level > logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_credentials,
        render_ledger_values,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """
    Bind values to every log entry emitted inside the block.

    None values are skipped so optional ids don't show up as nulls.

    Usage:
        with log_context(request_id="req-123", echo_app_id=app_id):
            logger.info("processing_request")
    """
    bound = {key: value for key, value in values.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield
