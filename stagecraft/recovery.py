"""Startup recovery and periodic reconciliation of workflow state.

Three sources describe a workflow: the durable store, the bus and the
ledger. The bus answers ``workflows.state.<id>`` from the durable store and
is treated as canonical; the ledger is corrected towards it only for the
disagreements ``_resolve`` knows how to settle.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from . import channels
from .contracts import (
    BUS_STATE_BY_STATUS,
    BusMessage,
    LedgerEntry,
    LedgerStatus,
    RequestTimeoutError,
    SubRequirementManifest,
    WorkflowState,
    WorkflowStatus,
)
from .decomposer import Decomposer
from .ledger import LedgerStore
from .persistence import WorkflowRepository
from .stages import StageCatalog
from .transports import BaseTransport

logger = logging.getLogger(__name__)


def _resolve(bus: LedgerStatus, ledger: LedgerStatus) -> Optional[LedgerStatus]:
    """Return the ledger status to write for a bus/ledger disagreement, if any."""
    if bus == LedgerStatus.COMPLETE and ledger != LedgerStatus.COMPLETE:
        return LedgerStatus.COMPLETE
    if bus == LedgerStatus.IN_PROGRESS and ledger == LedgerStatus.NEW:
        return LedgerStatus.IN_PROGRESS
    if bus == LedgerStatus.BLOCKED and ledger == LedgerStatus.IN_PROGRESS:
        return LedgerStatus.BLOCKED
    return None


class Reconciliation(BaseModel):
    request_id: str
    ledger: LedgerStatus
    bus: LedgerStatus
    applied: Optional[LedgerStatus] = None


class ReconciliationReport(BaseModel):
    reconciled: List[Reconciliation] = Field(default_factory=list)
    unresolved: List[Reconciliation] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)


class RecoveryManager:
    def __init__(
        self,
        transport: BaseTransport,
        repository: WorkflowRepository,
        ledger: LedgerStore,
        decomposer: Decomposer,
        catalog: StageCatalog,
        processed: Set[str],
        state_timeout: float = 1.0,
    ) -> None:
        self._transport = transport
        self._repository = repository
        self._ledger = ledger
        self._decomposer = decomposer
        self._catalog = catalog
        self._processed = processed
        self.state_timeout = state_timeout

    # ------------------------------------------------------------------
    # Workflow state over the bus
    async def serve_state(self) -> None:
        """Answer ``workflows.state.<id>`` requests from the durable store."""
        await self._transport.serve(channels.WORKFLOW_STATE_PATTERN, self._answer_state)
        logger.info("Workflow state responder ready")

    async def _answer_state(self, message: BusMessage) -> Dict[str, Any]:
        request_id = channels.tail(message.channel, channels.WORKFLOW_STATE_PATTERN)
        if request_id is None:
            return {"error": f"Not a workflow state channel: {message.channel}"}
        record = await self._repository.get_by_request_id(request_id)
        if record is None:
            return {"request_id": request_id, "state": None}
        return WorkflowState(
            request_id=record.request_id,
            state=BUS_STATE_BY_STATUS[record.status],
            current_stage=record.current_stage,
            assignee=record.assignee,
            started_at=record.started_at,
            updated_at=record.updated_at,
            last_heartbeat=record.last_heartbeat,
        ).model_dump(mode="json")

    async def query_state(self, request_id: str) -> Optional[WorkflowState]:
        """Ask the bus for a workflow's state; ``None`` if there is none."""
        try:
            reply = await self._transport.request(
                channels.workflow_state(request_id), timeout=self.state_timeout
            )
        except RequestTimeoutError:
            return None
        if "error" in reply.payload:
            logger.warning(f"State query for {request_id} failed: {reply.payload['error']}")
            return None
        state = WorkflowState(**reply.payload)
        return state if state.state is not None else None

    # ------------------------------------------------------------------
    # Startup
    async def recover(self) -> None:
        logger.info("Starting workflow recovery...")

        for record in await self._repository.list_by_status(WorkflowStatus.RUNNING):
            logger.info(
                f"Recovered persisted workflow {record.request_id} at stage {record.current_stage}"
            )
            self._processed.add(record.request_id)

        entries = await self._ledger.list_requests()
        in_progress = [e for e in entries if e.status == LedgerStatus.IN_PROGRESS]
        blocked = [e for e in entries if e.status == LedgerStatus.BLOCKED]

        logger.info(f"Found {len(in_progress)} in-progress workflow(s)")
        for entry in in_progress:
            try:
                await self._recover_in_progress(entry)
            except Exception:
                logger.exception(f"Failed to recover in-progress workflow {entry.id}")

        logger.info(f"Found {len(blocked)} blocked workflow(s)")
        for entry in blocked:
            try:
                await self._recover_blocked(entry)
            except Exception:
                logger.exception(f"Failed to recover blocked workflow {entry.id}")

        logger.info("Workflow recovery complete")

    async def _recover_in_progress(self, entry: LedgerEntry) -> None:
        state = await self.query_state(entry.id)
        if state is not None:
            logger.info(f"Workflow {entry.id} found on the bus, state: {state.state.value}")
            self._processed.add(entry.id)
            return
        logger.warning(f"Workflow {entry.id} has no bus state - resetting to new")
        await self._ledger.update_status(
            entry.id,
            LedgerStatus.NEW,
            "Recovery restart - no workflow state found",
            expected_version=entry.version,
        )

    async def _recover_blocked(self, entry: LedgerEntry) -> None:
        message = await self._transport.last_message(channels.sub_requirements(entry.id))
        if message is None:
            logger.warning(f"No sub-requirement manifest for blocked workflow {entry.id}")
            return
        manifest = SubRequirementManifest(**message.payload)

        completed = set(manifest.completed)
        final_stage = self._catalog.last
        for child in manifest.children:
            if child not in completed and await self._transport.last_message(
                channels.deliverable(final_stage, child)
            ):
                completed.add(child)
        logger.info(
            f"Recovered {manifest.total_count} sub-requirement(s) for {entry.id}: "
            f"{len(completed & set(manifest.children))}/{manifest.total_count} complete"
        )

        if completed >= set(manifest.children):
            logger.info(f"All sub-requirements complete, releasing {entry.id}")
            await self._repository.update_status(entry.id, WorkflowStatus.RUNNING)
            await self._ledger.update_status(
                entry.id,
                LedgerStatus.IN_PROGRESS,
                "Sub-requirements complete",
                expected_version=entry.version,
            )
            return

        self._decomposer.watch_children(entry.id, manifest.children, completed)
        self._processed.add(entry.id)

    # ------------------------------------------------------------------
    # Periodic reconciliation
    async def reconcile(self) -> ReconciliationReport:
        report = ReconciliationReport()
        for entry in await self._ledger.list_requests():
            try:
                await self._reconcile_entry(entry, report)
            except Exception:
                logger.exception(f"Failed to reconcile {entry.id}")

        if report.reconciled:
            logger.info(f"Reconciled {len(report.reconciled)} workflow state(s)")
        return report

    async def _reconcile_entry(self, entry: LedgerEntry, report: ReconciliationReport) -> None:
        state = await self.query_state(entry.id)
        if state is None:
            if entry.status == LedgerStatus.IN_PROGRESS:
                logger.warning(f"Ledger shows {entry.id} in progress but no workflow state exists")
            report.skipped.append(entry.id)
            return
        if state.state == entry.status:
            return

        logger.warning(
            f"State mismatch for {entry.id}: ledger={entry.status.value}, bus={state.state.value}"
        )
        target = _resolve(state.state, entry.status)
        item = Reconciliation(request_id=entry.id, ledger=entry.status, bus=state.state)
        if target is None:
            logger.warning(
                f"Unresolved disagreement for {entry.id} "
                f"(ledger={entry.status.value}, bus={state.state.value}) - needs human review"
            )
            report.unresolved.append(item)
            return

        if await self._ledger.update_status(
            entry.id, target, "Reconciled from workflow state", expected_version=entry.version
        ):
            item.applied = target
            report.reconciled.append(item)
