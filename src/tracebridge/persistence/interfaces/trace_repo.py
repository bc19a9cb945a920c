from __future__ import annotations

from typing import Any, Protocol


class TraceRepoProtocol(Protocol):
    def get_document(self, trace_id: str) -> dict[str, Any] | None: ...

    def insert_document(self, document: dict[str, Any]) -> None: ...

    def update_document(self, document: dict[str, Any]) -> None: ...

    def delete_document(self, trace_id: str) -> bool: ...

    def list_pending_documents(self) -> list[dict[str, Any]]: ...

    def record_event(self, trace_id: str, action: str, payload: dict[str, Any]) -> None: ...

    def list_events(self, trace_id: str) -> list[dict[str, Any]]: ...
