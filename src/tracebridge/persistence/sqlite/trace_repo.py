from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


class SqliteTraceRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "trace"}})
            raise PermissionError("UnitOfWork is read-only; trace writes are blocked")

    def get_document(self, trace_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT document_json FROM traces WHERE trace_id = ?", (trace_id,)
        ).fetchone()
        if row is None:
            return None
        return json.loads(row["document_json"])

    def insert_document(self, document: dict[str, Any]) -> None:
        self._ensure_writable()
        now = datetime.now(UTC).isoformat()
        try:
            self._conn.execute(
                """
                INSERT INTO traces(
                    trace_id, campaign_id, status, pending_tx_hash,
                    document_json, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    document["id"],
                    document["campaign"]["id"],
                    document["status"],
                    document.get("pending_tx_hash"),
                    json.dumps(document, sort_keys=True),
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"trace {document['id']} already exists") from exc

    def update_document(self, document: dict[str, Any]) -> None:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE traces SET
                status = ?,
                pending_tx_hash = ?,
                document_json = ?,
                updated_at = ?
            WHERE trace_id = ?
            """,
            (
                document["status"],
                document.get("pending_tx_hash"),
                json.dumps(document, sort_keys=True),
                datetime.now(UTC).isoformat(),
                document["id"],
            ),
        )
        if cursor.rowcount == 0:
            raise KeyError(document["id"])

    def delete_document(self, trace_id: str) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute("DELETE FROM traces WHERE trace_id = ?", (trace_id,))
        return cursor.rowcount > 0

    def list_pending_documents(self) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT document_json FROM traces
            WHERE pending_tx_hash IS NOT NULL
            ORDER BY updated_at ASC
            """
        ).fetchall()
        return [json.loads(row["document_json"]) for row in rows]

    def record_event(self, trace_id: str, action: str, payload: dict[str, Any]) -> None:
        self._ensure_writable()
        self._conn.execute(
            "INSERT INTO trace_events(trace_id, action, ts, payload_json) VALUES (?, ?, ?, ?)",
            (
                trace_id,
                action,
                datetime.now(UTC).isoformat(),
                json.dumps(payload, sort_keys=True, default=str),
            ),
        )

    def list_events(self, trace_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT action, ts, payload_json FROM trace_events
            WHERE trace_id = ?
            ORDER BY id ASC
            """,
            (trace_id,),
        ).fetchall()
        return [
            {"action": row["action"], "ts": row["ts"], "payload": json.loads(row["payload_json"])}
            for row in rows
        ]
