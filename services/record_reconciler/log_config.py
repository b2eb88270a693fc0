"""
Structured logging configuration using structlog.

Provides JSON logging with ISO timestamps and stdlib compatibility.
All log messages are structured and carry the request trace id.
"""

import logging
import secrets
import sys
import time
from typing import Any, Optional

import structlog
from structlog.typing import FilteringBoundLogger

TRACE_HEADER = "x-trace-id"


def configure_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    config: Any = None,
) -> None:
    """
    Configure structlog with JSON output and stdlib compatibility.

    Args:
        log_level: Override log level from settings
        log_format: Override log format from settings
        config: Settings instance (defaults to the process settings)
    """
    if config is None:
        from .settings import settings
        config = settings()

    level = (log_level or config.log_level).upper()
    format_type = (log_format or config.log_format).lower()

    # Configure stdlib logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level),
    )

    service_name = config.service_name
    environment = config.environment

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),

        # Add service metadata
        lambda _, __, event_dict: {
            **event_dict,
            "service": service_name,
            "environment": environment,
        },
    ]

    if format_type == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level)
        ),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> FilteringBoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (defaults to caller's module)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def generate_trace_id(prefix: str = "inb") -> str:
    """
    Generate a short, sortable trace id for request tracking.

    Example:
        >>> generate_trace_id("inb").startswith("inb_")
        True
    """
    millis = int(time.time() * 1000)
    return f"{prefix}_{millis:x}_{secrets.token_hex(3)}"


class StructlogMiddleware:
    """
    ASGI middleware that binds a trace id and request info to every log line.

    The trace id is taken from the ``x-trace-id`` header when the caller
    sends one and generated otherwise. It is also exposed to handlers as
    ``request.state.trace_id``.

    Example usage with FastAPI:
        app.add_middleware(StructlogMiddleware)
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = {
            key.decode("latin-1").lower(): value.decode("latin-1")
            for key, value in scope.get("headers", [])
        }
        trace_id = headers.get(TRACE_HEADER) or generate_trace_id("req")
        scope.setdefault("state", {})["trace_id"] = trace_id

        with structlog.contextvars.bound_contextvars(
            trace_id=trace_id,
            method=scope.get("method", "UNKNOWN"),
            path=scope.get("path", "/"),
        ):
            await self.app(scope, receive, send)


def log_api_call(
    logger: FilteringBoundLogger,
    method: str,
    url: str,
    status_code: Optional[int] = None,
    duration_ms: Optional[float] = None,
    **extra_context
) -> None:
    """
    Log an upstream API call with structured information.

    Args:
        logger: Logger instance
        method: HTTP method
        url: Request URL
        status_code: Response status code
        duration_ms: Request duration in milliseconds
        **extra_context: Additional context to include
    """
    context = {
        "method": method,
        "url": url,
        **extra_context
    }

    if status_code is not None:
        context["status_code"] = status_code

    if duration_ms is not None:
        context["duration_ms"] = round(duration_ms, 2)

    if status_code and status_code >= 500:
        logger.error("API call failed", **context)
    elif status_code and status_code >= 400:
        logger.warning("API call client error", **context)
    else:
        logger.debug("API call completed", **context)


def log_processing_batch(
    logger: FilteringBoundLogger,
    batch_id: str,
    items_processed: int,
    items_failed: int = 0,
    duration_ms: Optional[float] = None,
    **extra_context
) -> None:
    """
    Log batch processing results.

    Args:
        logger: Logger instance
        batch_id: Unique batch identifier
        items_processed: Number of items successfully processed
        items_failed: Number of items that failed processing
        duration_ms: Processing duration in milliseconds
        **extra_context: Additional context to include
    """
    total = items_processed + items_failed
    context = {
        "batch_id": batch_id,
        "items_processed": items_processed,
        "items_failed": items_failed,
        "success_rate": round(items_processed / total * 100, 2) if total > 0 else 0,
        **extra_context
    }

    if duration_ms is not None:
        context["duration_ms"] = round(duration_ms, 2)

    if items_failed > 0:
        logger.warning("Batch processing completed with failures", **context)
    else:
        logger.info("Batch processing completed successfully", **context)
