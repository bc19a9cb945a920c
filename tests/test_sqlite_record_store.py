from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from tracebridge.domain.trace import TraceStatus
from tracebridge.persistence import SqliteTraceRecordStore, UnitOfWorkFactory
from tracebridge.ports_records import RecordNotFoundError, RecordStoreError


@pytest.fixture
def store(tmp_path: Path) -> SqliteTraceRecordStore:
    return SqliteTraceRecordStore(str(tmp_path / "traces.sqlite"))


def test_create_and_get_round_trips_document(store, make_trace) -> None:
    trace = make_trace()

    asyncio.run(store.create(trace))
    loaded = asyncio.run(store.get(trace.id))

    assert loaded == trace
    assert asyncio.run(store.get("missing")) is None


def test_create_duplicate_is_store_error(store, make_trace) -> None:
    asyncio.run(store.create(make_trace()))

    with pytest.raises(RecordStoreError):
        asyncio.run(store.create(make_trace()))


def test_patch_merges_fields_and_keeps_identity(store, make_trace) -> None:
    trace = make_trace()
    asyncio.run(store.create(trace))

    patched = asyncio.run(
        store.patch(trace.id, {"status": "Pending", "pending_tx_hash": "0xabc"})
    )

    assert patched.status is TraceStatus.PENDING
    assert patched.pending_tx_hash == "0xabc"
    assert patched.identity() == trace.identity()
    assert patched.donation_counters == trace.donation_counters


def test_patch_rejects_invalid_values(store, make_trace) -> None:
    asyncio.run(store.create(make_trace()))

    with pytest.raises(RecordStoreError):
        asyncio.run(store.patch("trace-1", {"status": "Exploded"}))

    assert asyncio.run(store.get("trace-1")).status is TraceStatus.PROPOSED


def test_missing_records_raise_not_found(store) -> None:
    with pytest.raises(RecordNotFoundError) as excinfo:
        asyncio.run(store.patch("ghost", {"status": "Pending"}))
    assert excinfo.value.trace_id == "ghost"

    with pytest.raises(RecordNotFoundError):
        asyncio.run(store.remove("ghost"))


def test_remove_deletes_record(store, make_trace) -> None:
    asyncio.run(store.create(make_trace()))

    asyncio.run(store.remove("trace-1"))

    assert asyncio.run(store.get("trace-1")) is None


def test_list_pending_only_returns_marked_records(store, make_trace) -> None:
    asyncio.run(store.create(make_trace(id="idle")))
    asyncio.run(store.create(make_trace(id="busy")))
    asyncio.run(
        store.patch("busy", {"pending_tx_hash": "0xabc", "pending_status": "Pending"})
    )

    pending = asyncio.run(store.list_pending())

    assert [trace.id for trace in pending] == ["busy"]
    assert pending[0].pending_status is TraceStatus.PENDING


def test_events_are_appended_in_order(store, make_trace) -> None:
    asyncio.run(store.create(make_trace()))
    asyncio.run(store.record_event("trace-1", "accept", {"message": "welcome"}))
    asyncio.run(store.record_event("trace-1", "request_mark_complete", {"evidence": ["ipfs://a"]}))

    events = asyncio.run(store.list_events("trace-1"))

    assert [event["action"] for event in events] == ["accept", "request_mark_complete"]
    assert events[1]["payload"] == {"evidence": ["ipfs://a"]}


def test_read_only_unit_of_work_blocks_writes(tmp_path: Path, make_trace) -> None:
    db_path = str(tmp_path / "traces.sqlite")

    with UnitOfWorkFactory(db_path, read_only=True)() as uow:
        with pytest.raises(PermissionError):
            uow.traces.insert_document(make_trace().to_record())


def test_failed_unit_of_work_rolls_back(tmp_path: Path, make_trace) -> None:
    db_path = str(tmp_path / "traces.sqlite")
    factory = UnitOfWorkFactory(db_path)

    with pytest.raises(RuntimeError):
        with factory() as uow:
            uow.traces.insert_document(make_trace().to_record())
            raise RuntimeError("boom")

    with factory() as uow:
        assert uow.traces.get_document("trace-1") is None
