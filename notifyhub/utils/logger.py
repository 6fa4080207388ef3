"""Structured logging for notifyhub.

Every module obtains its logger through ``get_logger(__name__)``. Records are
rendered by structlog as JSON in production and as coloured console lines in
development. The current request's correlation id is carried in a ContextVar
and stamped onto every record emitted while that request is being handled.

Never pass a plaintext credential to a logger. Digests may be logged only as
their first 8 characters (see ``digest_prefix``).
"""

import logging
import sys
import time
from contextvars import ContextVar
from typing import Optional, TextIO

import structlog
from structlog.types import EventDict, Processor

# Correlation id of the request currently being handled
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def add_request_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add request_id to log context if available."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["timestamp"] = time.time()
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON format. If False, use console format.
        stream: Where records are written. Defaults to stdout.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_id,
        add_timestamp,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=True),
        ])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "notifyhub") -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Logger name (typically module name)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def digest_prefix(digest: Optional[str]) -> Optional[str]:
    """Shorten a credential digest for log output."""
    if not digest:
        return digest
    return f"{digest[:8]}..."


def set_request_id(request_id: str) -> None:
    """Set request ID in context for all subsequent logs."""
    request_id_var.set(request_id)


def clear_request_id() -> None:
    request_id_var.set(None)


# Sensible defaults until main.py reconfigures from the environment
configure_logging()
