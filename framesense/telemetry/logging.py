"""Structured logging configuration.

Configures structlog with JSON output in production and a console renderer
in development. Request identifiers are carried in contextvars so every log
line emitted while a request is being routed is correlated.

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "logger": "framesense.routing.router",
        "event": "router.request.completed",
        "request_id": "req_0f3c...",
        "user_id": "user-42",
        "source": "fast"
    }
"""

from __future__ import annotations

import logging
import sys
import uuid
from typing import Any

import structlog
from structlog.types import EventDict, Processor


def redact_binary(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace raw bytes (image payloads) with a size marker."""
    for key, value in event_dict.items():
        if isinstance(value, (bytes, bytearray, memoryview)):
            event_dict[key] = f"<{len(value)} bytes>"
    return event_dict


def _renderer(json_logs: bool) -> list[Processor]:
    if json_logs:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            redact_binary,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            *_renderer(json_logs),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def new_request_id() -> str:
    """Return a fresh request identifier."""
    return f"req_{uuid.uuid4().hex[:16]}"


def bind_request_context(request_id: str, user_id: str | None = None) -> None:
    """Bind request identifiers to the log context of the current task.

    Args:
        request_id: Request identifier
        user_id: User the request is routed for, if known
    """
    values = {"request_id": request_id}
    if user_id is not None:
        values["user_id"] = str(user_id)
    structlog.contextvars.bind_contextvars(**values)


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
