"""Logging and tracing utilities for shipgate.

- add_trace_context: structlog processor injecting trace_id/span_id
- configure_logging: structlog setup with trace context and JSON/console output
- create_span: OpenTelemetry span context manager recording errors

Example:
    >>> configure_logging(log_level="DEBUG", json_output=False)
    >>> with create_span("shipgate.pipeline.advance", {"deployment.id": "dep-1"}):
    ...     structlog.get_logger().info("advancing")  # carries trace_id/span_id
"""

from __future__ import annotations

import logging
from collections.abc import Generator, MutableMapping
from contextlib import contextmanager
from typing import Any, TextIO

import structlog
from opentelemetry import trace
from opentelemetry.trace import INVALID_SPAN_ID, INVALID_TRACE_ID, Span, Status, StatusCode

EventDict = MutableMapping[str, Any]

_TRACER_NAME = "shipgate"


def add_trace_context(
    logger: Any,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Add trace context to a structlog event dictionary.

    Injects trace_id and span_id from the active OpenTelemetry span when one
    is recording.
    """
    ctx = trace.get_current_span().get_span_context()

    if ctx.trace_id != INVALID_TRACE_ID and ctx.span_id != INVALID_SPAN_ID:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")

    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog with trace context injection.

    Args:
        log_level: Minimum level to emit (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: JSON lines when True, human-readable console output otherwise.
        stream: Where log lines are written (default: stdout).
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    renderer: Any = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(_TRACER_NAME)


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Exceptions escaping the block mark the span as errored and re-raise.

    Args:
        name: The name for the span.
        attributes: Optional attributes to set on the span. None values are skipped.

    Yields:
        The created span for additional attribute setting.
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.set_attribute("exception.type", type(e).__name__)
            span.set_attribute("exception.message", str(e))
            raise


__all__ = ["add_trace_context", "configure_logging", "create_span", "get_tracer"]
