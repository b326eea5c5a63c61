"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ..contracts import WorkflowStatus
from .models import WorkflowRecord


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends."""

    async def upsert(self, record: WorkflowRecord, restart: bool = False) -> WorkflowRecord:
        """Insert or update the row for ``record.request_id`` and return the stored row."""

    async def get_by_request_id(self, request_id: str) -> WorkflowRecord | None:
        """Retrieve the workflow row by request number."""

    async def list_by_status(self, status: WorkflowStatus) -> list[WorkflowRecord]:
        """Return rows currently in ``status``."""

    async def list_workflows(self) -> list[WorkflowRecord]:
        """Return all persisted workflows."""

    async def update_status(
        self, request_id: str, status: WorkflowStatus, reason: str | None = None
    ) -> None:
        """Set the workflow status, recording ``reason`` in metadata when given."""

    async def update_stage(self, request_id: str, stage: int) -> bool:
        """Advance ``current_stage``; returns ``False`` if it would move backwards."""

    async def mark_complete(self, request_id: str) -> None:
        """Mark the workflow as finished."""

    async def mark_blocked(self, request_id: str, reason: str) -> None:
        """Mark the workflow as blocked with a human-readable reason."""

    async def touch_heartbeat(self, request_id: str, at: datetime | None = None) -> None:
        """Record the latest liveness signal for the workflow."""
