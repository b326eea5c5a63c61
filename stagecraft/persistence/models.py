"""Data models for persisted workflow state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import WorkflowStatus, utcnow


class WorkflowRecord(BaseModel):
    """One durable row per request number."""

    request_id: str
    title: str = "Untitled Feature"
    assignee: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_stage: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def depth(self) -> int:
        return int(self.metadata.get("depth", 0) or 0)


def merge_record(
    existing: WorkflowRecord | None, incoming: WorkflowRecord, restart: bool = False
) -> WorkflowRecord:
    """Combine an upsert with the row already stored.

    The stage index never moves backwards unless ``restart`` is set. The
    original ``started_at`` survives plain upserts, and metadata keys merge
    with the incoming values winning.
    """
    if existing is None:
        return incoming.model_copy(update={"updated_at": utcnow()})

    stage = incoming.current_stage
    started_at = incoming.started_at
    if not restart:
        stage = max(existing.current_stage, incoming.current_stage)
        started_at = existing.started_at

    return existing.model_copy(
        update={
            "title": incoming.title or existing.title,
            "assignee": incoming.assignee or existing.assignee,
            "status": incoming.status,
            "current_stage": stage,
            "started_at": started_at,
            "updated_at": utcnow(),
            "completed_at": None if restart else existing.completed_at,
            "metadata": {**existing.metadata, **incoming.metadata},
        }
    )
