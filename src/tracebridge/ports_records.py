from __future__ import annotations

from typing import Any, Protocol

from tracebridge.domain.trace import Trace


class RecordStoreError(RuntimeError):
    """Raised when the off-chain record store rejects or cannot serve a request."""


class RecordNotFoundError(RecordStoreError):
    def __init__(self, trace_id: str) -> None:
        super().__init__(f"trace record not found: {trace_id}")
        self.trace_id = trace_id


class TraceRecordStore(Protocol):
    async def get(self, trace_id: str) -> Trace | None: ...

    async def create(self, trace: Trace) -> Trace: ...

    async def patch(self, trace_id: str, fields: dict[str, Any]) -> Trace:
        """Merge ``fields`` into the stored document; never replaces it."""
        ...

    async def remove(self, trace_id: str) -> None: ...

    async def list_pending(self) -> list[Trace]: ...

    async def record_event(
        self, trace_id: str, action: str, payload: dict[str, Any]
    ) -> None: ...
