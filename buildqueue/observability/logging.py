"""
Structured logging setup using structlog.
"""

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from buildqueue.config import get_settings

# Visible prefix of a lease token kept in log output
TOKEN_LOG_CHARS = 8


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Add OpenTelemetry trace context to log records.

    Args:
        logger: The logger instance.
        method_name: The method name being called.
        event_dict: The event dictionary.

    Returns:
        The event dictionary with trace context added.
    """
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def mask_lock_tokens(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Shorten lease tokens to the worker id plus a few random characters.

    A full token is enough to complete someone else's lease, so it never
    reaches log storage.
    """
    for key in ("lock_token", "previous_token"):
        token = event_dict.get(key)
        if isinstance(token, str) and ":" in token:
            worker_id, secret = token.rsplit(":", 1)
            event_dict[key] = f"{worker_id}:{secret[:TOKEN_LOG_CHARS]}..."
    return event_dict


def setup_logging(component: str | None = None) -> None:
    """
    Configure structured logging for the application.

    Sets up structlog with JSON or console output based on configuration
    and routes standard library records (the `extra={...}` style used across
    the package) through the same processors.

    Args:
        component: Process name bound to every record (api, worker, maintenance).
    """
    settings = get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
        mask_lock_tokens,
    ]

    if settings.log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
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
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if component:
        bind_context(component=component, service=settings.otel_service_name)


def bind_context(**kwargs: Any) -> None:
    """
    Bind context variables to all subsequent log messages.

    Args:
        **kwargs: Key-value pairs to add to log context.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def bind_job_context(job_id: Any, app_id: Any, attempts: int) -> None:
    """Bind the job being built so handler and sync logs carry it."""
    structlog.contextvars.bind_contextvars(
        job_id=str(job_id), app_id=str(app_id), attempt=attempts
    )


def unbind_job_context() -> None:
    structlog.contextvars.unbind_contextvars("job_id", "app_id", "attempt")


def clear_context() -> None:
    """Clear all bound context variables (process shutdown)."""
    structlog.contextvars.clear_contextvars()
