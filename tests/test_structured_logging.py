from __future__ import annotations

import asyncio
import io
import json
import logging
import sys

import pytest

from tracebridge.logging_context import bind_tx_hash, get_logging_context, with_logging_context
from tracebridge.logging_utils import JsonFormatter, setup_logging
from tracebridge.observability import span_attributes


def _record(msg: str = "trace_event", *, extra: dict | None = None, exc_info=None):
    record = logging.LogRecord(
        name="tracebridge.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    if extra is not None:
        record.extra = extra
    return record


def test_formatter_includes_transition_context() -> None:
    formatter = JsonFormatter()

    with with_logging_context(
        session_id="s-1", trace_id="trace-1", action="accept", tx_hash="0xabc"
    ):
        payload = json.loads(formatter.format(_record(extra={"status": "Pending"})))

    assert payload["message"] == "trace_event"
    assert payload["status"] == "Pending"
    assert payload["session_id"] == "s-1"
    assert payload["trace_id"] == "trace-1"
    assert payload["action"] == "accept"
    assert payload["tx_hash"] == "0xabc"
    assert payload["actor"] is None


def test_context_is_restored_after_block() -> None:
    with with_logging_context(trace_id="outer"):
        with with_logging_context(trace_id="inner", actor=None):
            assert get_logging_context() == {"trace_id": "inner"}
        assert get_logging_context() == {"trace_id": "outer"}
    assert get_logging_context() == {}


def test_bound_tx_hash_stays_inside_its_task() -> None:
    async def _transition() -> dict[str, str | None]:
        bind_tx_hash("0xabc")
        return get_logging_context()

    assert asyncio.run(_transition()) == {"tx_hash": "0xabc"}
    assert "tx_hash" not in get_logging_context()


def test_formatter_includes_exception_details() -> None:
    formatter = JsonFormatter()
    try:
        raise ValueError("boom")
    except ValueError:
        payload = json.loads(formatter.format(_record(exc_info=sys.exc_info())))

    assert payload["error_type"] == "ValueError"
    assert payload["error_message"] == "boom"
    assert "ValueError: boom" in payload["traceback"]


def test_formatter_redacts_secrets_in_extras() -> None:
    formatter = JsonFormatter()

    output = formatter.format(
        _record(extra={"record_store_token": "tok_1234567890abcdef", "path": "/traces"})
    )

    assert "tok_1234567890abcdef" not in output
    assert json.loads(output)["path"] == "/traces"


def test_explicit_extra_wins_over_context() -> None:
    formatter = JsonFormatter()

    with with_logging_context(trace_id="trace-ctx", tx_hash="0xctx"):
        payload = json.loads(formatter.format(_record(extra={"trace_id": "trace-explicit"})))

    assert payload["trace_id"] == "trace-explicit"
    assert payload["tx_hash"] == "0xctx"


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_levels(restore_root_logger) -> None:
    stream = io.StringIO()

    setup_logging("info", stream=stream)
    assert logging.getLogger().level == logging.INFO
    assert logging.getLogger("httpx").level == logging.WARNING

    setup_logging("DEBUG", stream=stream)
    assert logging.getLogger("httpcore").level == logging.DEBUG

    logging.getLogger("tracebridge.test").debug("trace_debug_line")
    assert json.loads(stream.getvalue().splitlines()[-1])["message"] == "trace_debug_line"


def test_span_attributes_merge_transition_context() -> None:
    with with_logging_context(trace_id="trace-1", action="accept"):
        attrs = span_attributes({"action": "approve_completion", "symbol": None})

    assert attrs == {"trace_id": "trace-1", "action": "approve_completion"}
