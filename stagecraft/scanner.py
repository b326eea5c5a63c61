"""Request scanner: admits eligible ledger requests into the pipeline."""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .breaker import CircuitBreaker, CircuitState
from .contracts import (
    ELIGIBLE_STATUSES,
    PRIORITY_ORDER,
    BusMessage,
    LedgerEntry,
    LedgerStatus,
    WorkflowStatus,
)
from .decomposer import lineage_depth
from .dispatch import SpecialistDispatcher
from .driver import PipelineDriver
from .knowledge import KnowledgeStore, strategic_context
from .ledger import LedgerStore

logger = logging.getLogger(__name__)

SETTLED_STATUSES = frozenset({LedgerStatus.COMPLETE, LedgerStatus.CANCELLED})


class Admission(str, Enum):
    STARTED = "started"
    SKIPPED = "skipped"
    FAILED = "failed"


def _priority_rank(entry: LedgerEntry) -> int:
    return PRIORITY_ORDER.get((entry.priority or "").lower(), len(PRIORITY_ORDER))


class RequestScanner:
    """Reads the ledger on every tick and starts or resumes eligible requests.

    ``processed`` is the orchestrator's de-dup set: ids started, or found
    already running, during this process lifetime.

    While any catastrophic request is open, only catastrophic requests and
    the requests they are blocked by are admitted, and neither counts
    against the concurrency ceiling.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        driver: PipelineDriver,
        dispatcher: SpecialistDispatcher,
        breaker: CircuitBreaker,
        processed: Set[str],
        max_concurrent: int,
        knowledge: Optional[KnowledgeStore] = None,
    ) -> None:
        self._ledger = ledger
        self._driver = driver
        self._dispatcher = dispatcher
        self._breaker = breaker
        self._processed = processed
        self._knowledge = knowledge
        self.max_concurrent = max_concurrent

    async def scan(self) -> List[str]:
        """Run one admission pass and return the ids started."""
        if not self._breaker.allow_request():
            wait = self._breaker.seconds_until_probe()
            minutes = math.ceil(wait / 60) if wait is not None else "?"
            logger.warning(
                f"Circuit breaker {self._breaker.state.value} - skipping scan "
                f"(failure rate {self._breaker.failure_rate:.1%}, next probe in {minutes} min)"
            )
            return []
        probing = self._breaker.state == CircuitState.HALF_OPEN

        try:
            entries = await self._ledger.list_requests()
        except Exception as e:
            logger.error(f"Failed to read ledger: {e}")
            self._breaker.record_failure()
            return []

        catastrophic = [
            e for e in entries if e.is_catastrophic and e.status not in SETTLED_STATUSES
        ]
        unblocking: Set[str] = {blocker for e in catastrophic for blocker in e.blocked_by}
        if catastrophic:
            logger.warning(
                f"Catastrophic priority open: {', '.join(e.id for e in catastrophic)}"
            )
            if unblocking:
                logger.info(f"Requests blocking catastrophic work: {', '.join(sorted(unblocking))}")

        running = sum(1 for e in entries if e.status == LedgerStatus.IN_PROGRESS)
        candidates = sorted(
            (e for e in entries if e.status in ELIGIBLE_STATUSES),
            key=lambda e: (not e.is_catastrophic, e.id not in unblocking, _priority_rank(e)),
        )
        for entry in entries:
            if entry.status == LedgerStatus.PENDING_APPROVAL:
                logger.debug(f"Skipping {entry.id} - pending human approval")

        started: List[str] = []
        attempted = False
        for entry in candidates:
            if probing and attempted:
                break
            urgent = entry.is_catastrophic or entry.id in unblocking
            if catastrophic and not urgent:
                logger.info(f"Skipping {entry.id} - catastrophic priority work comes first")
                continue
            try:
                outcome = await self.admit(entry, running=running, bypass_ceiling=urgent)
            except Exception:
                logger.exception(f"Error admitting {entry.id}")
                outcome = Admission.FAILED

            if outcome == Admission.SKIPPED:
                continue
            attempted = True
            if outcome == Admission.STARTED:
                self._breaker.record_success()
                started.append(entry.id)
                running += 1
            else:
                self._breaker.record_failure()
                if self._breaker.state == CircuitState.OPEN:
                    logger.warning("Circuit breaker opened mid-scan - stopping admissions")
                    break

        if probing and not attempted:
            self._breaker.record_success()
        if started:
            logger.info(f"Scan admitted {len(started)} request(s): {', '.join(started)}")
        return started

    async def admit(
        self,
        entry: LedgerEntry,
        running: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        bypass_ceiling: bool = False,
    ) -> Admission:
        """Start or resume one ledger entry if it is eligible."""
        if entry.status not in ELIGIBLE_STATUSES:
            return Admission.SKIPPED
        if entry.id in self._processed:
            logger.debug(f"{entry.id} already processed in this session - skipping")
            return Admission.SKIPPED

        if entry.status == LedgerStatus.NEW and not bypass_ceiling:
            if running is None:
                running = sum(
                    1 for e in await self._ledger.list_requests()
                    if e.status == LedgerStatus.IN_PROGRESS
                )
            if running >= self.max_concurrent:
                logger.info(
                    f"Skipping {entry.id} - at concurrency limit ({running}/{self.max_concurrent})"
                )
                return Admission.SKIPPED

        existing = await self._dispatcher.get_status(entry.id)
        if existing is not None and existing.status == WorkflowStatus.RUNNING:
            logger.info(f"{entry.id} ({entry.status.value}) already running - skipping duplicate")
            self._processed.add(entry.id)
            return Admission.SKIPPED

        stage = 0
        if entry.status != LedgerStatus.NEW:
            stage = await self._driver.first_missing_stage(entry.id)
            logger.info(f"{entry.id} is {entry.status.value} - resuming from stage {stage}")

        if not await self._ledger.update_status(
            entry.id, LedgerStatus.IN_PROGRESS, expected_version=entry.version
        ):
            logger.error(f"Failed to mark {entry.id} in progress - skipping to prevent duplicates")
            return Admission.SKIPPED

        meta = {"source": "ledger", "depth": lineage_depth(entry.id), **(metadata or {})}
        if self._knowledge is not None:
            meta["strategic_context"] = await strategic_context(
                self._knowledge, entry.id, entry.title
            )
        try:
            await self._driver.start(entry, stage, meta)
        except Exception as e:
            logger.error(f"Failed to start workflow for {entry.id}: {e}")
            await self._ledger.update_status(
                entry.id, entry.status, entry.reason, expected_version=entry.version + 1
            )
            return Admission.FAILED

        self._processed.add(entry.id)
        return Admission.STARTED

    async def handle_new_requirement(self, message: BusMessage) -> Admission:
        """Admit a request pushed on ``requirements.new`` or ``requirements.sub.new``."""
        payload = message.payload
        request_id = payload.get("request_id") or message.request_id
        if not request_id:
            logger.warning(f"Requirement on {message.channel} has no request id - ignoring")
            return Admission.SKIPPED

        entry = LedgerEntry(
            id=request_id,
            title=payload.get("title") or "Untitled Feature",
            assignee=payload.get("assignee"),
            priority=payload.get("priority") or "medium",
        )
        if not await self._ledger.add_request(entry):
            entry = await self._ledger.get_request(request_id) or entry

        metadata: Dict[str, Any] = {"source": payload.get("source", "bus")}
        for key in ("parent", "depth", "description", "type"):
            if payload.get(key) is not None:
                metadata[key] = payload[key]
        logger.info(f"New requirement {request_id} received on {message.channel}")
        return await self.admit(entry, metadata=metadata)
