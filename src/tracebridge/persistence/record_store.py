from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import ValidationError

from tracebridge.domain.trace import Trace
from tracebridge.persistence.uow import UnitOfWorkFactory
from tracebridge.ports_records import RecordNotFoundError, RecordStoreError

logger = logging.getLogger(__name__)


class SqliteTraceRecordStore:
    """Off-chain Trace documents kept in sqlite; calls run off the event loop."""

    def __init__(self, db_path: str) -> None:
        self._uow_factory = UnitOfWorkFactory(db_path)
        self._read_factory = UnitOfWorkFactory(db_path, read_only=True)

    async def get(self, trace_id: str) -> Trace | None:
        return await asyncio.to_thread(self._get, trace_id)

    async def create(self, trace: Trace) -> Trace:
        return await asyncio.to_thread(self._create, trace)

    async def patch(self, trace_id: str, fields: dict[str, Any]) -> Trace:
        return await asyncio.to_thread(self._patch, trace_id, fields)

    async def remove(self, trace_id: str) -> None:
        await asyncio.to_thread(self._remove, trace_id)

    async def list_pending(self) -> list[Trace]:
        return await asyncio.to_thread(self._list_pending)

    async def record_event(self, trace_id: str, action: str, payload: dict[str, Any]) -> None:
        await asyncio.to_thread(self._record_event, trace_id, action, payload)

    async def list_events(self, trace_id: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._list_events, trace_id)

    def _get(self, trace_id: str) -> Trace | None:
        with self._read_factory() as uow:
            document = uow.traces.get_document(trace_id)
        return Trace.from_record(document) if document is not None else None

    def _create(self, trace: Trace) -> Trace:
        document = trace.to_record()
        try:
            with self._uow_factory() as uow:
                uow.traces.insert_document(document)
        except ValueError as exc:
            raise RecordStoreError(str(exc)) from exc
        return trace

    def _patch(self, trace_id: str, fields: dict[str, Any]) -> Trace:
        with self._uow_factory() as uow:
            current = uow.traces.get_document(trace_id)
            if current is None:
                raise RecordNotFoundError(trace_id)
            merged = {**current, **fields}
            try:
                updated = Trace.from_record(merged)
            except ValidationError as exc:
                raise RecordStoreError(f"patch for {trace_id} is invalid: {exc}") from exc
            uow.traces.update_document(updated.to_record())
        logger.debug(
            "trace_record_patched",
            extra={"extra": {"trace_id": trace_id, "fields": sorted(fields)}},
        )
        return updated

    def _remove(self, trace_id: str) -> None:
        with self._uow_factory() as uow:
            if not uow.traces.delete_document(trace_id):
                raise RecordNotFoundError(trace_id)

    def _list_pending(self) -> list[Trace]:
        with self._read_factory() as uow:
            documents = uow.traces.list_pending_documents()
        return [Trace.from_record(document) for document in documents]

    def _record_event(self, trace_id: str, action: str, payload: dict[str, Any]) -> None:
        with self._uow_factory() as uow:
            uow.traces.record_event(trace_id, action, payload)

    def _list_events(self, trace_id: str) -> list[dict[str, Any]]:
        with self._read_factory() as uow:
            return uow.traces.list_events(trace_id)
