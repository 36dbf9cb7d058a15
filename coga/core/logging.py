"""Logging setup with correlation fields for metric sources and calibration sessions.

Records emitted while handling a snapshot carry the reporting ``source_id``;
records emitted during a calibration carry its ``session_id``. Both travel
through ``contextvars`` so async callers never pass them explicitly.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime


@dataclass(frozen=True, slots=True)
class CorrelationContext:
    source_id: str | None = None
    session_id: str | None = None


_EMPTY_CONTEXT = CorrelationContext()
_CORRELATION_CONTEXT: contextvars.ContextVar[CorrelationContext | None] = contextvars.ContextVar(
    "coga_correlation_context",
    default=None,
)


def get_correlation_context() -> CorrelationContext:
    context = _CORRELATION_CONTEXT.get()
    if context is None:
        return _EMPTY_CONTEXT
    return context


class CorrelationFilter(logging.Filter):
    """Inject correlation fields into every ``LogRecord`` before formatting."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_correlation_context()
        record.source_id = context.source_id
        record.session_id = context.session_id
        return True


class _JsonFormatter(logging.Formatter):
    """One compact JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object | None] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source_id": getattr(record, "source_id", None),
            "session_id": getattr(record, "session_id", None),
        }
        if record.exc_info is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


def setup_logging(level: int | str = logging.INFO, json_output: bool = False) -> None:
    """Configure root logging once with correlation-aware handlers.

    Logs go to stderr; stdout is reserved for command output such as replayed
    scores.
    """

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.filters.clear()

    handler = logging.StreamHandler(stream=sys.stderr)
    if json_output:
        formatter: logging.Formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s "
            "source_id=%(source_id)s session_id=%(session_id)s "
            "%(message)s",
        )
    handler.setFormatter(formatter)

    correlation_filter = CorrelationFilter()
    handler.addFilter(correlation_filter)
    root_logger.addFilter(correlation_filter)
    root_logger.addHandler(handler)


@contextmanager
def correlation_scope(
    *,
    source_id: str | None = None,
    session_id: str | None = None,
) -> Iterator[None]:
    """Temporarily apply correlation IDs; nested scopes inherit unset fields."""

    current = get_correlation_context()
    updated = CorrelationContext(
        source_id=current.source_id if source_id is None else source_id,
        session_id=current.session_id if session_id is None else session_id,
    )
    token: contextvars.Token[CorrelationContext | None] = _CORRELATION_CONTEXT.set(updated)
    try:
        yield
    finally:
        _CORRELATION_CONTEXT.reset(token)


__all__ = [
    "CorrelationContext",
    "CorrelationFilter",
    "correlation_scope",
    "get_correlation_context",
    "setup_logging",
]
