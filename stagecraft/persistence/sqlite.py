"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from ..contracts import WorkflowStatus, utcnow
from .models import WorkflowRecord, merge_record
from .repository import WorkflowRepository

_COLUMNS = (
    "request_id, title, assignee, status, current_stage, started_at, "
    "updated_at, completed_at, last_heartbeat, metadata"
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                request_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                assignee TEXT,
                status TEXT NOT NULL,
                current_stage INTEGER NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT,
                last_heartbeat TEXT,
                metadata TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflows_status ON workflows (status)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _to_record(row: sqlite3.Row) -> WorkflowRecord:
        return WorkflowRecord(
            request_id=row["request_id"],
            title=row["title"],
            assignee=row["assignee"],
            status=row["status"],
            current_stage=row["current_stage"],
            started_at=_parse_ts(row["started_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            last_heartbeat=_parse_ts(row["last_heartbeat"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )

    def _get_sync(self, request_id: str) -> WorkflowRecord | None:
        row = self._fetchone(
            f"SELECT {_COLUMNS} FROM workflows WHERE request_id = ?", request_id
        )
        return self._to_record(row) if row else None

    def _upsert_sync(self, record: WorkflowRecord, restart: bool) -> WorkflowRecord:
        stored = merge_record(self._get_sync(record.request_id), record, restart)
        self._execute(
            f"""
            INSERT INTO workflows ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(request_id) DO UPDATE SET
                title = excluded.title,
                assignee = excluded.assignee,
                status = excluded.status,
                current_stage = excluded.current_stage,
                started_at = excluded.started_at,
                updated_at = excluded.updated_at,
                completed_at = excluded.completed_at,
                metadata = excluded.metadata
            """,
            stored.request_id,
            stored.title,
            stored.assignee,
            stored.status.value,
            stored.current_stage,
            _ts(stored.started_at),
            _ts(stored.updated_at),
            _ts(stored.completed_at),
            _ts(stored.last_heartbeat),
            json.dumps(stored.metadata),
        )
        return stored

    def _update_metadata_sync(self, request_id: str, key: str, value: Any) -> None:
        wf = self._get_sync(request_id)
        if wf is None:
            return
        wf.metadata[key] = value
        self._execute(
            "UPDATE workflows SET metadata = ? WHERE request_id = ?",
            json.dumps(wf.metadata),
            request_id,
        )

    # ------------------------------------------------------------------
    # Repository API
    async def upsert(self, record: WorkflowRecord, restart: bool = False) -> WorkflowRecord:
        return await asyncio.to_thread(self._upsert_sync, record, restart)

    async def get_by_request_id(self, request_id: str) -> WorkflowRecord | None:
        return await asyncio.to_thread(self._get_sync, request_id)

    async def list_by_status(self, status: WorkflowStatus) -> list[WorkflowRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_COLUMNS} FROM workflows WHERE status = ? ORDER BY updated_at",
            WorkflowStatus(status).value,
        )
        return [self._to_record(r) for r in rows]

    async def list_workflows(self) -> list[WorkflowRecord]:
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT {_COLUMNS} FROM workflows ORDER BY started_at"
        )
        return [self._to_record(r) for r in rows]

    async def update_status(
        self, request_id: str, status: WorkflowStatus, reason: str | None = None
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET status = ?, updated_at = ? WHERE request_id = ?",
            WorkflowStatus(status).value,
            _ts(utcnow()),
            request_id,
        )
        if reason:
            await asyncio.to_thread(
                self._update_metadata_sync, request_id, "status_reason", reason
            )

    async def update_stage(self, request_id: str, stage: int) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflows SET current_stage = ?, updated_at = ?
            WHERE request_id = ? AND current_stage <= ?
            """,
            stage,
            _ts(utcnow()),
            request_id,
            stage,
        )
        return changed > 0

    async def mark_complete(self, request_id: str) -> None:
        now = _ts(utcnow())
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflows SET status = ?, completed_at = ?, updated_at = ?
            WHERE request_id = ?
            """,
            WorkflowStatus.COMPLETE.value,
            now,
            now,
            request_id,
        )

    async def mark_blocked(self, request_id: str, reason: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET status = ?, updated_at = ? WHERE request_id = ?",
            WorkflowStatus.BLOCKED.value,
            _ts(utcnow()),
            request_id,
        )
        await asyncio.to_thread(
            self._update_metadata_sync, request_id, "blocked_reason", reason
        )

    async def touch_heartbeat(self, request_id: str, at: datetime | None = None) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET last_heartbeat = ? WHERE request_id = ?",
            _ts(at or utcnow()),
            request_id,
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()
