from __future__ import annotations

import io
import json
import logging

from coga.core.logging import (
    CorrelationFilter,
    correlation_scope,
    get_correlation_context,
    setup_logging,
)


def _record(msg: str = "hello") -> logging.LogRecord:
    return logging.LogRecord(
        name="test.logger",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_correlation_filter_injects_fields() -> None:
    record = _record()

    with correlation_scope(source_id="tab-1", session_id="cal-1"):
        assert CorrelationFilter().filter(record) is True

    assert record.source_id == "tab-1"
    assert record.session_id == "cal-1"


def test_filter_outside_scope_sets_none() -> None:
    record = _record()
    CorrelationFilter().filter(record)
    assert record.source_id is None
    assert record.session_id is None


def test_correlation_scope_nested_inherits_and_restores() -> None:
    baseline = get_correlation_context()

    with correlation_scope(source_id="tab-1"):
        outer = get_correlation_context()
        assert outer.session_id is None

        with correlation_scope(session_id="cal-1"):
            inner = get_correlation_context()
            assert inner.source_id == "tab-1"
            assert inner.session_id == "cal-1"

        assert get_correlation_context() == outer

    assert get_correlation_context() == baseline


def test_json_output_carries_correlation(restore_root_logging: logging.Logger) -> None:
    setup_logging("DEBUG", json_output=True)
    handler = restore_root_logging.handlers[0]
    stream = io.StringIO()
    handler.setStream(stream)  # type: ignore[attr-defined]

    with correlation_scope(source_id="tab-9"):
        logging.getLogger("coga.test").info("scored %d", 3)

    payload = json.loads(stream.getvalue().strip())
    assert payload["message"] == "scored 3"
    assert payload["level"] == "INFO"
    assert payload["source_id"] == "tab-9"
    assert payload["session_id"] is None


def test_setup_replaces_handlers(restore_root_logging: logging.Logger) -> None:
    setup_logging()
    setup_logging()
    assert len(restore_root_logging.handlers) == 1
    assert restore_root_logging.level == logging.INFO
