"""Stage pipeline driver.

A workflow's position is the number of contiguous stages, counted from the
first, that have a deliverable on the bus. The durable ``current_stage`` is
the index of the stage most recently dispatched; it is written before every
dispatch so a stage already spawned is never sent twice, and it never moves
backwards outside of an explicit restart.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Dict, Iterable, Optional, Set

from . import channels
from .contracts import BusMessage, LedgerEntry, LedgerStatus, WorkflowStatus, utcnow
from .dispatch import SpecialistDispatcher, route_assignee
from .persistence import WorkflowRecord, WorkflowRepository
from .stages import StageCatalog, default_catalog
from .transports import BaseTransport

logger = logging.getLogger(__name__)

BLOCKING_DELIVERABLE_STATUSES = frozenset({"BLOCKED", "REJECTED", "REJECT"})


class PipelineDriver:
    """Start, resume, restart and advance workflows over the stage catalog."""

    def __init__(
        self,
        transport: BaseTransport,
        repository: WorkflowRepository,
        dispatcher: SpecialistDispatcher,
        catalog: Optional[StageCatalog] = None,
    ) -> None:
        self._transport = transport
        self._repository = repository
        self._dispatcher = dispatcher
        self.catalog = catalog or default_catalog()
        self._completion_published: Set[str] = set()
        self._advancing: Set[str] = set()

    # ------------------------------------------------------------------
    # Deliverable detection
    async def completed_stages(self, request_id: str, since: Optional[datetime] = None) -> int:
        """Count stages from the first onwards that have a deliverable.

        Stops at the first gap. Deliverables published before ``since`` are
        treated as missing.
        """
        done = 0
        for stage in self.catalog:
            message = await self._transport.last_message(channels.deliverable(stage, request_id))
            if message is None or (since is not None and message.timestamp < since):
                break
            done += 1
        return done

    async def _blocked_by(self, request_id: str, stage_index: int) -> bool:
        """Whether the latest deliverable of ``stage_index`` reports a block."""
        stage = self.catalog[stage_index]
        message = await self._transport.last_message(channels.deliverable(stage, request_id))
        if message is None:
            return False
        status = str(message.payload.get("status", "")).upper()
        if status in BLOCKING_DELIVERABLE_STATUSES:
            logger.info(f"{stage.name} deliverable for {request_id} reports {status} - holding")
            return True
        return False

    async def _restarted_at(self, request_id: str) -> Optional[datetime]:
        record = await self._repository.get_by_request_id(request_id)
        if record is None:
            return None
        marker = record.metadata.get("restarted_at")
        return datetime.fromisoformat(marker) if marker else None

    async def first_missing_stage(self, request_id: str) -> int:
        """Index of the first stage without a deliverable (0 if all exist)."""
        done = await self.completed_stages(request_id, await self._restarted_at(request_id))
        if done >= len(self.catalog):
            logger.info(f"All stages of {request_id} delivered - starting from the beginning")
            return 0
        return done

    # ------------------------------------------------------------------
    # Dispatch
    async def _record_stage(
        self,
        request_id: str,
        title: str,
        assignee: str,
        stage_index: int,
        metadata: Optional[Dict[str, Any]] = None,
        restart: bool = False,
    ) -> WorkflowRecord:
        return await self._repository.upsert(
            WorkflowRecord(
                request_id=request_id,
                title=title,
                assignee=assignee,
                status=WorkflowStatus.RUNNING,
                current_stage=stage_index,
                metadata=metadata or {},
            ),
            restart=restart,
        )

    async def _dispatch(
        self, request_id: str, send: Awaitable[None], rollback_to: Optional[int] = None
    ) -> None:
        """Await a dispatch; on failure mark the record FAILED and re-raise.

        ``rollback_to`` restores the stage recorded before this dispatch so the
        next tick sees the stage as not yet sent and tries again.
        """
        try:
            await send
        except Exception as e:
            reason = f"Dispatch failed: {e}"
            record = await self._repository.get_by_request_id(request_id)
            if rollback_to is not None and record is not None:
                await self._repository.upsert(
                    record.model_copy(
                        update={
                            "status": WorkflowStatus.FAILED,
                            "current_stage": rollback_to,
                            "metadata": {"status_reason": reason},
                        }
                    ),
                    restart=True,
                )
            else:
                await self._repository.update_status(request_id, WorkflowStatus.FAILED, reason)
            raise

    async def start(
        self,
        entry: LedgerEntry,
        stage_index: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Begin a workflow for a ledger entry at ``stage_index``."""
        assignee = entry.assignee or route_assignee(entry.id)
        meta = {"priority": entry.priority, **(metadata or {})}
        if stage_index == 0:
            # Re-admitting a request that already has a record starts it over.
            rerun = await self._repository.get_by_request_id(entry.id) is not None
            if rerun:
                meta["restarted_at"] = utcnow().isoformat()
                self._completion_published.discard(entry.id)
            await self._record_stage(entry.id, entry.title, assignee, 0, meta, restart=rerun)
            await self._dispatch(
                entry.id, self._dispatcher.start_workflow(entry.id, entry.title, assignee, meta)
            )
            logger.info(f"Started workflow {entry.id} ({entry.title}) for {assignee}")
        else:
            await self.resume_from_stage(entry.id, entry.title, assignee, stage_index, meta)

    async def resume_from_stage(
        self,
        request_id: str,
        title: str,
        assignee: str,
        stage_index: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        stored = await self._record_stage(request_id, title, assignee, stage_index, metadata)
        if stored.current_stage > stage_index:
            logger.warning(
                f"{request_id} already recorded at stage {stored.current_stage}, "
                f"resuming at {stage_index}"
            )
        await self._dispatch(
            request_id,
            self._dispatcher.resume_from_stage(request_id, title, assignee, stage_index, metadata),
        )
        logger.info(
            f"Resumed {request_id} at stage {stage_index} ({self.catalog[stage_index].name})"
        )

    async def restart_from_stage(
        self, request_id: str, stage_index: int = 0, reason: str = ""
    ) -> None:
        """Reset the workflow to ``stage_index``, discarding earlier progress."""
        existing = await self._repository.get_by_request_id(request_id)
        title = existing.title if existing else "Untitled Feature"
        assignee = (existing.assignee if existing else None) or route_assignee(request_id)
        await self._record_stage(
            request_id,
            title,
            assignee,
            stage_index,
            {"restart_reason": reason, "restarted_at": utcnow().isoformat()},
            restart=True,
        )
        self._completion_published.discard(request_id)
        await self._dispatch(
            request_id, self._dispatcher.restart_from_stage(request_id, stage_index, reason)
        )
        logger.info(f"Restarted {request_id} from stage {stage_index}: {reason}")

    async def approve(
        self, request_id: str, title: Optional[str] = None, assignee: Optional[str] = None
    ) -> None:
        """Resume at the implementation stage, keeping research and critique."""
        record = await self._repository.get_by_request_id(request_id)
        title = title or (record.title if record else "Untitled Feature")
        assignee = assignee or (record.assignee if record else None) or route_assignee(request_id)
        await self.resume_from_stage(
            request_id, title, assignee, self.catalog.implementation_index
        )

    # ------------------------------------------------------------------
    # Progress
    async def _publish_completion(self, request_id: str, record: Optional[WorkflowRecord]) -> None:
        if request_id in self._completion_published:
            return
        if record is not None and record.status == WorkflowStatus.COMPLETE:
            self._completion_published.add(request_id)
            return
        self._completion_published.add(request_id)
        await self._transport.publish(
            channels.WORKFLOW_COMPLETED,
            BusMessage(
                request_id=request_id,
                payload={
                    "request_id": request_id,
                    "title": record.title if record else None,
                    "assignee": record.assignee if record else None,
                    "completed_at": utcnow().isoformat(),
                },
            ),
        )
        logger.info(f"Workflow {request_id} finished all {len(self.catalog)} stages")

    async def advance(
        self, request_id: str, title: Optional[str] = None, assignee: Optional[str] = None
    ) -> Optional[int]:
        """Dispatch the next stage if its predecessor has delivered.

        Returns the stage index dispatched, or ``None`` when nothing was sent.
        """
        if request_id in self._advancing:
            return None
        self._advancing.add(request_id)
        try:
            record = await self._repository.get_by_request_id(request_id)
            since = None
            if record is not None and record.metadata.get("restarted_at"):
                since = datetime.fromisoformat(record.metadata["restarted_at"])
            done = await self.completed_stages(request_id, since)

            if done == 0:
                return None
            if done >= len(self.catalog):
                await self._publish_completion(request_id, record)
                return None

            if record is not None and record.current_stage >= done:
                return None
            if await self._blocked_by(request_id, done - 1):
                return None

            title = title or (record.title if record else "Untitled Feature")
            assignee = assignee or (record.assignee if record else None) or route_assignee(request_id)
            previous = record.current_stage if record is not None else done - 1
            if record is None:
                await self._record_stage(request_id, title, assignee, done)
            elif not await self._repository.update_stage(request_id, done):
                return None
            elif record.status == WorkflowStatus.FAILED:
                logger.info(f"Retrying dispatch of stage {done} for {request_id}")
                await self._repository.update_status(request_id, WorkflowStatus.RUNNING)

            await self._dispatch(
                request_id,
                self._dispatcher.resume_from_stage(request_id, title, assignee, done),
                rollback_to=previous,
            )
            logger.info(
                f"Progressed {request_id} to stage {done} ({self.catalog[done].name})"
            )
            return done
        finally:
            self._advancing.discard(request_id)

    async def progress(self, entries: Iterable[LedgerEntry]) -> None:
        """Advance every in-progress ledger entry, isolating failures."""
        for entry in entries:
            if entry.status != LedgerStatus.IN_PROGRESS:
                continue
            try:
                await self.advance(entry.id, entry.title, entry.assignee)
            except Exception:
                logger.exception(f"Error progressing {entry.id}")

    async def on_deliverable(
        self, request_id: str, stage_index: int, payload: Optional[Dict[str, Any]] = None
    ) -> Optional[int]:
        """Advance straight away when a deliverable for a running workflow lands."""
        record = await self._repository.get_by_request_id(request_id)
        if record is None or record.status != WorkflowStatus.RUNNING:
            return None
        status = str((payload or {}).get("status", "")).upper()
        if status in BLOCKING_DELIVERABLE_STATUSES:
            logger.info(
                f"{self.catalog[stage_index].name} deliverable for {request_id} reports {status}"
            )
            return None
        return await self.advance(request_id)
