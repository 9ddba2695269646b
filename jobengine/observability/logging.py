"""
Structured logging for workers, the scheduler, the API and the CLI.

Modules log through `logging.getLogger(__name__)` with `extra=`; records
are rendered by structlog as JSON or console lines carrying the process
role, the trace context and the job context the worker binds around
each execution.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace

from jobengine.config import get_settings

# Third-party loggers kept at WARNING
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "httpx")

# Event keys that may carry multi-line failure text
TRACEBACK_KEYS = ("error", "reason")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add the current OpenTelemetry trace and span ids, if a span is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


class AddRole:
    """Processor stamping every event with the process role."""

    def __init__(self, role: str):
        self.role = role

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("role", self.role)
        return event_dict


def condense_tracebacks(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Keep only the last line of multi-line failure text.

    Full tracebacks live in the failed job store; log lines carry the
    "ValueError: bad input" summary.
    """
    for key in TRACEBACK_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and "\n" in value:
            event_dict[key] = value.strip().splitlines()[-1]
    return event_dict


def shared_processors(role: str) -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        AddRole(role),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
        condense_tracebacks,
    ]


def setup_logging(role: str = "jobengine", level: str | None = None, fmt: str | None = None) -> None:
    """
    Configure structured logging for one process.

    Args:
        role: Process role added to every line ("worker", "scheduler", "api", "cli").
        level: Log level override. Defaults to settings.
        fmt: "json" or "console". Defaults to settings.
    """
    settings = get_settings()
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    processors = shared_processors(role)

    if (fmt or settings.log_format) == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables to all subsequent log messages of this task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


@contextmanager
def job_log_context(job_id: str, queue: str, attempt: int) -> Iterator[None]:
    """Bind the job being executed for the duration of the block."""
    bind_context(job_id=job_id, queue=queue, attempt=attempt)
    try:
        yield
    finally:
        unbind_context("job_id", "queue", "attempt")
