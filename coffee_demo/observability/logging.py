"""Structured logging for the coffee service.

Every line is a single structlog event. The request pipeline binds
``request_id``, ``trace_id``, ``method`` and ``path`` into contextvars;
``add_span_context`` adds the id of the span that was active when the line
was written, so a log line can be matched to the exact data call that wrote it.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace
from structlog.types import EventDict, WrappedLogger


UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

_CONFIGURED = False


def add_span_context(_logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return event_dict
    event_dict.setdefault("trace_id", trace.format_trace_id(span_context.trace_id))
    event_dict.setdefault("span_id", trace.format_span_id(span_context.span_id))
    return event_dict


def level_number(level: str) -> int:
    """Numeric level for ``level``; unknown names fall back to INFO."""

    value = logging.getLevelName(level.strip().upper())
    return value if isinstance(value, int) else logging.INFO


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        add_span_context,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _stdout_handler(json_logs: bool) -> logging.Handler:
    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=False)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=_shared_processors())
    )
    return handler


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """Route structlog and stdlib records (uvicorn included) to one stdout handler.

    JSON output unless ``json_logs`` is false. Only the first call has an effect.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    structlog.configure(
        processors=[*_shared_processors(), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = _stdout_handler(json_logs)
    numeric_level = level_number(level)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric_level)

    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
        uvicorn_logger.setLevel(numeric_level)

    _CONFIGURED = True
