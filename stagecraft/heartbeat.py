"""Liveness and duration checks for in-flight workflows."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from .contracts import EscalationReason, LedgerStatus, WorkflowState, utcnow
from .escalation import Escalator
from .ledger import LedgerStore

logger = logging.getLogger(__name__)

StateLookup = Callable[[str], Awaitable[Optional[WorkflowState]]]


class HeartbeatMonitor:
    """Escalate in-progress workflows that run too long or stop beating.

    The max-duration check runs first and ends the evaluation of that
    workflow; a stale heartbeat only flags the workflow, in-flight work is
    left alone.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        query_state: StateLookup,
        escalator: Escalator,
        max_duration: float,
        heartbeat_timeout: float,
    ) -> None:
        self._ledger = ledger
        self._query_state = query_state
        self._escalator = escalator
        self.max_duration = timedelta(seconds=max_duration)
        self.heartbeat_timeout = timedelta(seconds=heartbeat_timeout)

    async def sweep(self, now: Optional[datetime] = None) -> List[tuple[str, EscalationReason]]:
        """Check every in-progress ledger entry once; return the escalations raised."""
        now = now or utcnow()
        escalated: List[tuple[str, EscalationReason]] = []
        for entry in await self._ledger.list_requests():
            if entry.status != LedgerStatus.IN_PROGRESS:
                continue
            try:
                reason = await self._check(entry.id, now)
            except Exception:
                logger.exception(f"Heartbeat check failed for {entry.id}")
                continue
            if reason is not None:
                escalated.append((entry.id, reason))
        return escalated

    async def _check(self, request_id: str, now: datetime) -> Optional[EscalationReason]:
        state = await self._query_state(request_id)
        if state is None:
            logger.warning(f"No workflow state found for in-progress {request_id}")
            return None

        started = state.started_at or state.updated_at
        if started is not None and now - started > self.max_duration:
            hours = int((now - started).total_seconds() // 3600)
            logger.error(
                f"Workflow {request_id} exceeded max duration "
                f"({hours}h > {self.max_duration.total_seconds() / 3600:g}h)"
            )
            await self._escalator.escalate(
                request_id,
                EscalationReason.MAX_DURATION_EXCEEDED,
                {
                    "duration_hours": hours,
                    "max_hours": self.max_duration.total_seconds() / 3600,
                    "reason": "Workflow taking too long, needs human intervention",
                },
            )
            return EscalationReason.MAX_DURATION_EXCEEDED

        if state.last_heartbeat is not None and now - state.last_heartbeat > self.heartbeat_timeout:
            minutes = int((now - state.last_heartbeat).total_seconds() // 60)
            logger.error(f"Workflow {request_id} heartbeat timeout ({minutes} min)")
            await self._escalator.escalate(
                request_id,
                EscalationReason.HEARTBEAT_TIMEOUT,
                {
                    "last_heartbeat": state.last_heartbeat.isoformat(),
                    "timeout_minutes": minutes,
                    "current_stage": state.current_stage,
                    "reason": "Workflow appears stuck, no heartbeat detected",
                },
            )
            return EscalationReason.HEARTBEAT_TIMEOUT
        return None
