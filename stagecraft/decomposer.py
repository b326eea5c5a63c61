"""Blocked-workflow decomposer.

When the critique stage blocks a workflow, the issues it raised become
child requests. The parent waits in ``blocked`` until every child's final
stage has delivered, then resumes at the implementation stage.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from . import channels, constants
from .contracts import (
    BlockedEvent,
    BusMessage,
    EscalationReason,
    Issue,
    LedgerStatus,
    SubRequirement,
    SubRequirementManifest,
    WorkflowStatus,
)
from .driver import PipelineDriver
from .escalation import Escalator
from .ledger import LedgerStore
from .persistence import WorkflowRepository
from .stages import CRITIQUE_STAGE
from .transports import BaseTransport

logger = logging.getLogger(__name__)

ISSUE_PATTERN = re.compile(
    re.escape(constants.ISSUE_MARKER) + r"\s*\*\*(.+?)\*\*\s*-\s*(.+?)(?=\n|$)"
)
LINEAGE_PATTERN = re.compile(rf"-{constants.SUB_MARKER}\d*(?=-|$)")


def lineage_depth(request_id: str) -> int:
    """Count the sub-request markers in a request number."""
    return len(LINEAGE_PATTERN.findall(request_id))


class SubWorkflowSet(BaseModel):
    """Children created by one decomposition and which of them finished."""

    parent_id: str
    children: List[str]
    completed: Set[str] = Field(default_factory=set)

    @property
    def total(self) -> int:
        return len(self.children)

    def is_complete(self) -> bool:
        return self.completed >= set(self.children)

    def manifest(self) -> SubRequirementManifest:
        return SubRequirementManifest(
            parent_id=self.parent_id,
            children=self.children,
            total_count=self.total,
            completed=[c for c in self.children if c in self.completed],
        )


class Decomposer:
    def __init__(
        self,
        transport: BaseTransport,
        repository: WorkflowRepository,
        ledger: LedgerStore,
        driver: PipelineDriver,
        escalator: Escalator,
        max_depth: int = constants.MAX_DECOMPOSITION_DEPTH,
    ) -> None:
        self._transport = transport
        self._repository = repository
        self._ledger = ledger
        self._driver = driver
        self._escalator = escalator
        self.max_depth = max_depth
        self._watches: Dict[str, SubWorkflowSet] = {}
        self._parent_of: Dict[str, str] = {}

    @property
    def watches(self) -> Dict[str, SubWorkflowSet]:
        return dict(self._watches)

    async def depth_of(self, request_id: str) -> int:
        record = await self._repository.get_by_request_id(request_id)
        if record is not None and "depth" in record.metadata:
            return record.depth
        return lineage_depth(request_id)

    async def handle_blocked(self, event: BlockedEvent) -> None:
        request_id = event.request_id
        if event.stage.lower() != CRITIQUE_STAGE:
            reason = event.reason or f"Blocked at {event.stage}"
            logger.info(f"{request_id} blocked at {event.stage}: {reason}")
            await self._repository.mark_blocked(request_id, reason)
            await self._ledger.update_status(request_id, LedgerStatus.BLOCKED, reason)
            return

        logger.info(f"Handling blocked critique for {request_id}: {event.reason}")
        depth = await self.depth_of(request_id)
        if depth >= self.max_depth:
            logger.error(
                f"Maximum decomposition depth ({self.max_depth}) reached for {request_id}"
            )
            await self._escalator.escalate(
                request_id,
                EscalationReason.MAX_DEPTH_EXCEEDED,
                {
                    "depth": depth,
                    "max_depth": self.max_depth,
                    "reason": "Requirement too complex, needs human decomposition",
                    "blockers": event.blockers,
                },
            )
            return

        children: List[str] = []
        try:
            critique = await self._transport.last_message(
                channels.deliverable(self._driver.catalog.find(CRITIQUE_STAGE), request_id)
            )
            issues = self.parse_issues(critique.payload if critique else None, event.blockers)
            logger.info(f"Parsed {len(issues)} issue(s) from critique of {request_id}")

            if not issues:
                logger.info(f"No actionable issues for {request_id} - resuming workflow")
                await self._driver.approve(request_id)
                return

            subs = self.create_sub_requirements(request_id, issues, depth)
            children = [s.request_id for s in subs]
            self.watch_children(request_id, children)
            await self.publish_sub_requirements(request_id, subs)

            reason = f"Waiting for {len(subs)} sub-requirements to complete"
            await self._ledger.update_status(request_id, LedgerStatus.BLOCKED, reason)
            await self._repository.mark_blocked(request_id, reason)
        except Exception as e:
            logger.exception(f"Failed to decompose blocked critique for {request_id}")
            self._unwatch(request_id)
            await self._escalator.escalate(
                request_id,
                EscalationReason.NEEDS_HUMAN_DECISION,
                {
                    "reason": f"Failed to create sub-requirements: {e}",
                    "event": event.model_dump(mode="json"),
                },
            )

    @staticmethod
    def parse_issues(
        critique: Optional[Dict[str, Any]], blockers: Optional[List[Any]] = None
    ) -> List[Issue]:
        """Turn event blockers, or failing that the critique summary, into issues."""
        if blockers:
            issues = []
            for blocker in blockers:
                if isinstance(blocker, dict):
                    title = blocker.get("title") or blocker.get("issue") or str(blocker)
                    issues.append(
                        Issue(
                            title=str(title),
                            description=str(
                                blocker.get("description") or blocker.get("details") or title
                            ),
                            priority=blocker.get("priority") or "P1",
                            type=blocker.get("type") or "backend",
                        )
                    )
                else:
                    issues.append(Issue(title=str(blocker), description=str(blocker)))
            return issues

        summary = (critique or {}).get("summary") or ""
        return [
            Issue(title=m.group(1).strip(), description=m.group(2).strip(), priority="P0")
            for m in ISSUE_PATTERN.finditer(summary)
        ]

    @staticmethod
    def create_sub_requirements(
        parent_id: str, issues: Iterable[Issue], depth: int
    ) -> List[SubRequirement]:
        timestamp = int(time.time() * 1000)
        return [
            SubRequirement(
                request_id=f"{parent_id}-{constants.SUB_MARKER}{n}-{timestamp}",
                title=issue.title,
                description=issue.description,
                priority=issue.priority,
                type=issue.type,
                parent=parent_id,
                depth=depth + 1,
            )
            for n, issue in enumerate(issues, start=1)
        ]

    async def publish_sub_requirements(
        self, parent_id: str, subs: List[SubRequirement]
    ) -> None:
        for sub in subs:
            await self._transport.publish(
                channels.NEW_SUB_REQUIREMENTS,
                BusMessage(
                    request_id=sub.request_id,
                    payload={**sub.model_dump(mode="json"), "source": "decomposition"},
                ),
            )
            logger.info(f"Published {sub.request_id} (priority {sub.priority})")

        watch = self._watches.get(parent_id) or SubWorkflowSet(
            parent_id=parent_id, children=[s.request_id for s in subs]
        )
        await self._publish_manifest(watch)

    async def _publish_manifest(self, watch: SubWorkflowSet) -> None:
        await self._transport.publish(
            channels.sub_requirements(watch.parent_id),
            BusMessage(
                request_id=watch.parent_id,
                payload=watch.manifest().model_dump(mode="json"),
            ),
        )

    def watch_children(
        self, parent_id: str, children: List[str], completed: Iterable[str] = ()
    ) -> SubWorkflowSet:
        """Track ``children`` of ``parent_id`` until all of them deliver."""
        watch = SubWorkflowSet(
            parent_id=parent_id, children=list(children), completed=set(completed)
        )
        self._watches[parent_id] = watch
        for child in watch.children:
            self._parent_of[child] = parent_id
        logger.info(
            f"Watching {watch.total} sub-requirement(s) of {parent_id} "
            f"({len(watch.completed)} already complete)"
        )
        return watch

    def _unwatch(self, parent_id: str) -> Optional[SubWorkflowSet]:
        watch = self._watches.pop(parent_id, None)
        if watch is not None:
            for child in watch.children:
                self._parent_of.pop(child, None)
        return watch

    async def on_child_completed(self, child_id: str) -> bool:
        """Record a child's final deliverable; resume the parent when all are in.

        Returns ``False`` when ``child_id`` is not a tracked sub-request.
        """
        parent_id = self._parent_of.get(child_id)
        watch = self._watches.get(parent_id) if parent_id else None
        if watch is None or child_id in watch.completed:
            return watch is not None

        watch.completed.add(child_id)
        logger.info(
            f"Sub-requirement {child_id} completed ({len(watch.completed)}/{watch.total})"
        )
        await self._publish_manifest(watch)

        if watch.is_complete():
            self._unwatch(parent_id)
            await self.resume_parent(parent_id)
        return True

    async def resume_parent(self, parent_id: str) -> None:
        logger.info(f"All sub-requirements of {parent_id} complete - resuming")
        try:
            await self._ledger.update_status(
                parent_id, LedgerStatus.IN_PROGRESS, "Sub-requirements complete"
            )
            await self._repository.update_status(parent_id, WorkflowStatus.RUNNING)
            entry = await self._ledger.get_request(parent_id)
            await self._driver.approve(
                parent_id,
                title=entry.title if entry else None,
                assignee=entry.assignee if entry else None,
            )
        except Exception as e:
            logger.error(f"Failed to resume {parent_id}: {e}")
