"""Core message contracts and domain models for the stagecraft engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StagecraftError(Exception):
    """Base class for engine errors."""


class RequestTimeoutError(StagecraftError):
    """A bus request got no reply in time (or nobody serves the channel)."""


class LedgerError(StagecraftError):
    """Reading or writing the request ledger failed."""


class LedgerConflictError(LedgerError):
    """A ledger write could not be verified on read-back."""


class DispatchError(StagecraftError):
    """The specialist dispatcher could not start stage work."""


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETE = "complete"
    FAILED = "failed"
    ESCALATED = "escalated"


class LedgerStatus(str, Enum):
    NEW = "new"
    PENDING = "pending"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETE = "complete"
    FAILED = "failed"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"
    PENDING_APPROVAL = "pending_approval"


ELIGIBLE_STATUSES = frozenset(
    {LedgerStatus.NEW, LedgerStatus.PENDING, LedgerStatus.REJECTED}
)


# Durable workflow status as reported on the bus (ledger vocabulary).
BUS_STATE_BY_STATUS: Dict[WorkflowStatus, LedgerStatus] = {
    WorkflowStatus.PENDING: LedgerStatus.PENDING,
    WorkflowStatus.RUNNING: LedgerStatus.IN_PROGRESS,
    WorkflowStatus.BLOCKED: LedgerStatus.BLOCKED,
    WorkflowStatus.COMPLETE: LedgerStatus.COMPLETE,
    WorkflowStatus.FAILED: LedgerStatus.FAILED,
    WorkflowStatus.ESCALATED: LedgerStatus.ESCALATED,
}


PRIORITY_ORDER: Dict[str, int] = {
    "catastrophic": 0,
    "critical": 1,
    "high": 2,
    "medium": 3,
    "low": 4,
}


class EscalationReason(str, Enum):
    MAX_DEPTH_EXCEEDED = "MAX_DEPTH_EXCEEDED"
    MAX_DURATION_EXCEEDED = "MAX_DURATION_EXCEEDED"
    HEARTBEAT_TIMEOUT = "HEARTBEAT_TIMEOUT"
    NEEDS_HUMAN_DECISION = "NEEDS_HUMAN_DECISION"
    NEEDS_MANUAL_INTERVENTION = "NEEDS_MANUAL_INTERVENTION"
    SPECIALIST_UNAVAILABLE = "SPECIALIST_UNAVAILABLE"


class LedgerEntry(BaseModel):
    """One owner-facing request as seen in the ledger."""

    id: str
    title: str = "Untitled Feature"
    status: LedgerStatus = LedgerStatus.NEW
    assignee: Optional[str] = None
    priority: str = "medium"
    reason: Optional[str] = None
    blocked_by: List[str] = Field(default_factory=list)
    version: int = 0

    @field_validator("status", mode="before")
    @classmethod
    def _normalise_status(cls, v: Any) -> Any:
        # Owners write ``NEW`` or ``In Progress`` as often as ``new``.
        if isinstance(v, str):
            return v.strip().lower().replace(" ", "_").replace("-", "_")
        return v

    @field_validator("blocked_by", mode="before")
    @classmethod
    def _listify_blockers(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return [str(item) for item in v] if isinstance(v, (list, tuple)) else v

    @property
    def is_catastrophic(self) -> bool:
        return (self.priority or "").lower() == "catastrophic"


class BusMessage(BaseModel):
    """Envelope exchanged over the bus."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    channel: str = ""
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    reply_to: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "BusMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)


class WorkOrder(BaseModel):
    """A single stage of work handed to a specialist."""

    request_id: str
    title: str
    assignee: str
    stage_index: int
    stage_name: str
    reason: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class DispatchStatus(BaseModel):
    """What the dispatcher knows about a workflow."""

    status: WorkflowStatus
    stage: int
    assignee: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WorkflowState(BaseModel):
    """Canonical workflow state answered on ``workflows.state.<id>``."""

    request_id: str
    state: Optional[LedgerStatus] = None
    current_stage: Optional[int] = None
    assignee: Optional[str] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None


class Issue(BaseModel):
    """A problem extracted from a blocking critique."""

    title: str
    description: str
    priority: str = "P1"
    type: str = "backend"


class SubRequirement(BaseModel):
    """A child request created to resolve one issue of a blocked parent."""

    request_id: str
    title: str
    description: str
    priority: str = "P1"
    type: str = "backend"
    parent: str
    depth: int = 1
    status: LedgerStatus = LedgerStatus.NEW
    created_at: datetime = Field(default_factory=utcnow)


class SubRequirementManifest(BaseModel):
    """Published per decomposition so recovery can rebuild child tracking."""

    parent_id: str
    children: List[str] = Field(default_factory=list)
    total_count: int = 0
    completed: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def completed_count(self) -> int:
        return len(set(self.completed) & set(self.children))

    def is_complete(self) -> bool:
        return self.total_count > 0 and self.completed_count >= self.total_count


class BlockedEvent(BaseModel):
    """A stage reported that it cannot proceed."""

    request_id: str
    stage: str
    reason: Optional[str] = None
    blockers: List[Any] = Field(default_factory=list)
    blocked_by: Optional[str] = None


class StrategicDecision(BaseModel):
    """A decision rendered on a blocked workflow by a strategic reviewer."""

    request_id: str
    decision: str
    reasoning: str = ""
    agent: Optional[str] = None
    business_context: Optional[str] = None
    instructions: Dict[str, Any] = Field(default_factory=dict)
