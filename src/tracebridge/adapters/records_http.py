from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from tracebridge.domain.trace import Trace
from tracebridge.ports_records import RecordNotFoundError, RecordStoreError

logger = logging.getLogger(__name__)


class HttpTraceRecordStore:
    """Trace records behind a feathers-style REST service.

    Writes are never retried here; the pipeline decides what a failed patch means.
    """

    def __init__(
        self,
        *,
        base_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout, headers=headers
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        trace_id: str | None = None,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await self._client.request(method, path, params=params, json=json_body)
        except httpx.TransportError as exc:
            raise RecordStoreError(f"{method} {path} failed: {exc}") from exc
        if response.status_code == 404 and trace_id is not None:
            raise RecordNotFoundError(trace_id)
        if response.status_code >= 400:
            logger.warning(
                "record_store_http_error",
                extra={
                    "extra": {
                        "method": method,
                        "path": path,
                        "status_code": response.status_code,
                        "body": response.text[:200],
                    }
                },
            )
            raise RecordStoreError(f"{method} {path} returned {response.status_code}")
        if not response.content:
            return None
        return response.json()

    async def get(self, trace_id: str) -> Trace | None:
        try:
            payload = await self._request("GET", f"/traces/{trace_id}", trace_id=trace_id)
        except RecordNotFoundError:
            return None
        return _to_trace(payload)

    async def create(self, trace: Trace) -> Trace:
        payload = await self._request("POST", "/traces", json_body=trace.to_record())
        return _to_trace(payload) if payload else trace

    async def patch(self, trace_id: str, fields: dict[str, Any]) -> Trace:
        payload = await self._request(
            "PATCH", f"/traces/{trace_id}", trace_id=trace_id, json_body=fields
        )
        return _to_trace(payload)

    async def remove(self, trace_id: str) -> None:
        await self._request("DELETE", f"/traces/{trace_id}", trace_id=trace_id)

    async def list_pending(self) -> list[Trace]:
        payload = await self._request(
            "GET", "/traces", params={"pending_tx_hash[$ne]": "null", "$limit": 200}
        )
        rows = payload.get("data", []) if isinstance(payload, dict) else payload or []
        return [trace for trace in map(_to_trace, rows) if trace.pending_tx_hash is not None]

    async def record_event(self, trace_id: str, action: str, payload: dict[str, Any]) -> None:
        await self._request(
            "POST",
            "/events",
            json_body={"trace_id": trace_id, "action": action, "payload": payload},
        )


def _to_trace(payload: Any) -> Trace:
    try:
        return Trace.from_record(payload)
    except ValidationError as exc:
        raise RecordStoreError(f"record store returned an invalid trace: {exc}") from exc
