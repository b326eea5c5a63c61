"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict

from ..contracts import WorkflowStatus, utcnow
from .models import WorkflowRecord, merge_record
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowRecord] = {}

    # ------------------------------------------------------------------
    async def upsert(self, record: WorkflowRecord, restart: bool = False) -> WorkflowRecord:
        stored = merge_record(self._workflows.get(record.request_id), record, restart)
        self._workflows[record.request_id] = stored
        return stored

    async def get_by_request_id(self, request_id: str) -> WorkflowRecord | None:
        return self._workflows.get(request_id)

    async def list_by_status(self, status: WorkflowStatus) -> list[WorkflowRecord]:
        return [wf for wf in self._workflows.values() if wf.status == status]

    async def list_workflows(self) -> list[WorkflowRecord]:
        return list(self._workflows.values())

    async def update_status(
        self, request_id: str, status: WorkflowStatus, reason: str | None = None
    ) -> None:
        wf = self._workflows.get(request_id)
        if not wf:
            return
        wf.status = status
        wf.updated_at = utcnow()
        if reason:
            wf.metadata["status_reason"] = reason

    async def update_stage(self, request_id: str, stage: int) -> bool:
        wf = self._workflows.get(request_id)
        if not wf or stage < wf.current_stage:
            return False
        wf.current_stage = stage
        wf.updated_at = utcnow()
        return True

    async def mark_complete(self, request_id: str) -> None:
        wf = self._workflows.get(request_id)
        if wf:
            wf.status = WorkflowStatus.COMPLETE
            wf.completed_at = wf.updated_at = utcnow()

    async def mark_blocked(self, request_id: str, reason: str) -> None:
        wf = self._workflows.get(request_id)
        if wf:
            wf.status = WorkflowStatus.BLOCKED
            wf.updated_at = utcnow()
            wf.metadata["blocked_reason"] = reason

    async def touch_heartbeat(self, request_id: str, at: datetime | None = None) -> None:
        wf = self._workflows.get(request_id)
        if wf:
            wf.last_heartbeat = at or utcnow()
