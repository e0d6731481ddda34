"""Structured logging for the sync service.

Every stdlib ``logging.getLogger(__name__)`` call is rendered by a structlog
``ProcessorFormatter`` on a single stderr handler, as colored console text
or as JSON lines.

Records carry the connected account being worked on (bound with
:func:`account_context` through structlog's context variables) and the
active OpenTelemetry span. Messages pass through :func:`redact_secrets`
before rendering, so a token echoed back inside a provider error never
reaches the log sink.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from opentelemetry import trace

from orbyt_sync.errors import redact_secrets

ACCOUNT_KEY = "account_id"

# Chatty at INFO: one line per request, pool checkout or HTTP call.
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "asyncpg")


@contextmanager
def account_context(account_id: object) -> Iterator[None]:
    """Tag every record logged inside the block with *account_id*."""
    with structlog.contextvars.bound_contextvars(**{ACCOUNT_KEY: str(account_id)}):
        yield


def current_account() -> str | None:
    return structlog.contextvars.get_contextvars().get(ACCOUNT_KEY)


def add_trace_ids(logger: object, method_name: str, event_dict: dict) -> dict:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def redact_event(logger: object, method_name: str, event_dict: dict) -> dict:
    event = event_dict.get("event")
    if isinstance(event, str):
        event_dict["event"] = redact_secrets(event)
    return event_dict


def _renderer(fmt: str) -> tuple[structlog.types.Processor, str]:
    if fmt == "json":
        return structlog.processors.JSONRenderer(), "iso"
    return structlog.dev.ConsoleRenderer(), "%H:%M:%S"


def _level(name: str) -> int:
    level = logging.getLevelNamesMapping().get(name.upper())
    return logging.INFO if level is None else level


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Route the process's logging through structlog.

    Safe to call more than once; the root handler is replaced, not added.
    Unknown level names fall back to INFO.
    """
    renderer, timestamp_format = _renderer(fmt)
    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_format, utc=True),
        add_trace_ids,
        structlog.stdlib.ExtraAdder(),
        redact_event,
    ]

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(_level(level))
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
