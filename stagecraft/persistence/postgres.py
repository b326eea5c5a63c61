"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import asyncpg

from ..contracts import WorkflowStatus, utcnow
from .models import WorkflowRecord, merge_record
from .repository import WorkflowRepository

_COLUMNS = (
    "request_id, title, assignee, status, current_stage, started_at, "
    "updated_at, completed_at, last_heartbeat, metadata"
)


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                request_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                assignee TEXT,
                status TEXT NOT NULL,
                current_stage INTEGER NOT NULL DEFAULT 0,
                started_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                last_heartbeat TIMESTAMPTZ,
                metadata JSONB
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflows_status ON workflows (status)"
        )

    @staticmethod
    def _to_record(row: Any) -> WorkflowRecord:
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return WorkflowRecord(
            request_id=row["request_id"],
            title=row["title"],
            assignee=row["assignee"],
            status=row["status"],
            current_stage=row["current_stage"],
            started_at=row["started_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            last_heartbeat=row["last_heartbeat"],
            metadata=metadata or {},
        )

    async def _get(self, conn: asyncpg.Connection, request_id: str) -> WorkflowRecord | None:
        row = await conn.fetchrow(
            f"SELECT {_COLUMNS} FROM workflows WHERE request_id = $1", request_id
        )
        return self._to_record(row) if row else None

    # ------------------------------------------------------------------
    async def upsert(self, record: WorkflowRecord, restart: bool = False) -> WorkflowRecord:
        conn = await self._connect()
        try:
            async with conn.transaction():
                stored = merge_record(await self._get(conn, record.request_id), record, restart)
                await conn.execute(
                    f"""
                    INSERT INTO workflows ({_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
                    ON CONFLICT (request_id) DO UPDATE SET
                        title = EXCLUDED.title,
                        assignee = EXCLUDED.assignee,
                        status = EXCLUDED.status,
                        current_stage = EXCLUDED.current_stage,
                        started_at = EXCLUDED.started_at,
                        updated_at = EXCLUDED.updated_at,
                        completed_at = EXCLUDED.completed_at,
                        metadata = EXCLUDED.metadata
                    """,
                    stored.request_id,
                    stored.title,
                    stored.assignee,
                    stored.status.value,
                    stored.current_stage,
                    stored.started_at,
                    stored.updated_at,
                    stored.completed_at,
                    stored.last_heartbeat,
                    json.dumps(stored.metadata),
                )
        finally:
            await conn.close()
        return stored

    async def get_by_request_id(self, request_id: str) -> WorkflowRecord | None:
        conn = await self._connect()
        try:
            return await self._get(conn, request_id)
        finally:
            await conn.close()

    async def list_by_status(self, status: WorkflowStatus) -> list[WorkflowRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM workflows WHERE status = $1 ORDER BY updated_at",
                WorkflowStatus(status).value,
            )
        finally:
            await conn.close()
        return [self._to_record(r) for r in rows]

    async def list_workflows(self) -> list[WorkflowRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(f"SELECT {_COLUMNS} FROM workflows ORDER BY started_at")
        finally:
            await conn.close()
        return [self._to_record(r) for r in rows]

    async def update_status(
        self, request_id: str, status: WorkflowStatus, reason: str | None = None
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE workflows
                SET status = $1,
                    updated_at = $2,
                    metadata = CASE WHEN $3::text IS NULL THEN metadata
                               ELSE COALESCE(metadata, '{}'::jsonb) || jsonb_build_object('status_reason', $3::text)
                               END
                WHERE request_id = $4
                """,
                WorkflowStatus(status).value,
                utcnow(),
                reason,
                request_id,
            )
        finally:
            await conn.close()

    async def update_stage(self, request_id: str, stage: int) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE workflows SET current_stage = $1, updated_at = $2
                WHERE request_id = $3 AND current_stage <= $1
                """,
                stage,
                utcnow(),
                request_id,
            )
        finally:
            await conn.close()
        return result.split()[-1] != "0"

    async def mark_complete(self, request_id: str) -> None:
        conn = await self._connect()
        try:
            now = utcnow()
            await conn.execute(
                """
                UPDATE workflows SET status = $1, completed_at = $2, updated_at = $2
                WHERE request_id = $3
                """,
                WorkflowStatus.COMPLETE.value,
                now,
                request_id,
            )
        finally:
            await conn.close()

    async def mark_blocked(self, request_id: str, reason: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE workflows
                SET status = $1,
                    updated_at = $2,
                    metadata = COALESCE(metadata, '{}'::jsonb) || jsonb_build_object('blocked_reason', $3::text)
                WHERE request_id = $4
                """,
                WorkflowStatus.BLOCKED.value,
                utcnow(),
                reason,
                request_id,
            )
        finally:
            await conn.close()

    async def touch_heartbeat(self, request_id: str, at: datetime | None = None) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflows SET last_heartbeat = $1 WHERE request_id = $2",
                at or utcnow(),
                request_id,
            )
        finally:
            await conn.close()
