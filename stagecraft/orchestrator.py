"""The orchestrator process: owns every component, timer and subscription."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from . import channels
from .breaker import CircuitBreaker
from .config import StagecraftConfig, load_config
from .contracts import (
    BlockedEvent,
    BusMessage,
    EscalationReason,
    LedgerStatus,
    StrategicDecision,
)
from .decomposer import Decomposer
from .dispatch import BusDispatcher, SpecialistDispatcher
from .driver import PipelineDriver
from .escalation import Escalator
from .heartbeat import HeartbeatMonitor
from .knowledge import InMemoryKnowledgeStore, KnowledgeStore, remember
from .ledger import LedgerStore, get_ledger
from .persistence import WorkflowRepository, get_repository
from .recovery import RecoveryManager
from .scanner import RequestScanner
from .stages import CRITIQUE_STAGE, StageCatalog, default_catalog
from .transports import BaseTransport, get_transport

logger = logging.getLogger(__name__)

Handler = Callable[[BusMessage], Awaitable[None]]


def _describe(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("description", item))
    return str(item)


class Orchestrator:
    """Single owner of the engine's in-process state.

    The de-dup set, breaker and decomposition watches live on this instance
    and are handed to the components that share them.
    """

    def __init__(
        self,
        config: Optional[StagecraftConfig] = None,
        transport: Optional[BaseTransport] = None,
        repository: Optional[WorkflowRepository] = None,
        ledger: Optional[LedgerStore] = None,
        dispatcher: Optional[SpecialistDispatcher] = None,
        knowledge: Optional[KnowledgeStore] = None,
        catalog: Optional[StageCatalog] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or load_config()
        settings = self.config.orchestrator
        self.transport = transport or get_transport(config=self.config)
        self.repository = repository or get_repository(config=self.config)
        self.ledger = ledger or get_ledger(config=self.config)
        self.catalog = catalog or default_catalog()
        self.dispatcher = dispatcher or BusDispatcher(self.transport, self.repository, self.catalog)
        self.knowledge = knowledge or InMemoryKnowledgeStore()

        self.processed: Set[str] = set()
        self.breaker = CircuitBreaker(self.config.breaker, clock=clock)
        self.escalator = Escalator(
            self.ledger, self.repository, self.transport, settings.escalation_dir
        )
        self.driver = PipelineDriver(
            self.transport, self.repository, self.dispatcher, self.catalog
        )
        self.decomposer = Decomposer(
            self.transport,
            self.repository,
            self.ledger,
            self.driver,
            self.escalator,
            max_depth=settings.max_decomposition_depth,
        )
        self.scanner = RequestScanner(
            self.ledger,
            self.driver,
            self.dispatcher,
            self.breaker,
            self.processed,
            max_concurrent=settings.max_concurrent_workflows,
            knowledge=self.knowledge,
        )
        self.recovery = RecoveryManager(
            self.transport,
            self.repository,
            self.ledger,
            self.decomposer,
            self.catalog,
            self.processed,
            state_timeout=settings.state_request_timeout,
        )
        self.heartbeat = HeartbeatMonitor(
            self.ledger,
            self.recovery.query_state,
            self.escalator,
            max_duration=settings.max_workflow_duration,
            heartbeat_timeout=settings.heartbeat_timeout,
        )

        self._tasks: List[asyncio.Task] = []
        self._initialized = False
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    async def initialize(self) -> None:
        """Connect, start answering state queries, then recover prior work."""
        await self.transport.connect()
        await self.recovery.serve_state()
        try:
            await self.recovery.recover()
        except Exception:
            logger.exception("Failed to recover workflows")
        self._initialized = True
        logger.info("Orchestrator initialized")

    async def start_daemon(self, lifespan: Optional[float] = None) -> None:
        if self._running:
            logger.info("Daemon already running")
            return
        if not self._initialized:
            await self.initialize()

        self._running = True
        settings = self.config.orchestrator
        logger.info("Starting orchestrator daemon...")

        self._every(settings.scan_interval, "request scan", self.scanner.scan)
        self._every(settings.progress_interval, "workflow progress", self.progress)
        self._every(settings.heartbeat_interval, "heartbeat check", self.heartbeat.sweep)
        self._every(
            settings.reconciliation_interval, "state reconciliation", self.recovery.reconcile
        )

        self._listen(channels.STAGE_BLOCKED, self._on_blocked, lifespan)
        self._listen(channels.STAGE_COMPLETED, self._on_stage_completed, lifespan)
        self._listen(channels.WORKFLOW_COMPLETED, self._on_workflow_completed, lifespan)
        self._listen(channels.NEW_REQUIREMENTS, self._on_new_requirement, lifespan)
        self._listen(channels.NEW_SUB_REQUIREMENTS, self._on_new_requirement, lifespan)
        self._listen(channels.DELIVERABLES_PATTERN, self._on_deliverable, lifespan)
        self._listen(channels.HEARTBEAT_PATTERN, self._on_heartbeat, lifespan)
        self._listen(channels.DECISIONS_PATTERN, self._on_decision, lifespan)
        self._listen(channels.AGENT_ERRORS_PATTERN, self._on_agent_error, lifespan)
        # Let every subscription register before the first scan publishes anything.
        await asyncio.sleep(0)

        logger.info(
            f"Daemon running: scan every {settings.scan_interval:g}s, "
            f"progress every {settings.progress_interval:g}s, "
            f"heartbeats every {settings.heartbeat_interval:g}s, "
            f"reconciliation every {settings.reconciliation_interval:g}s"
        )
        try:
            await self.scanner.scan()
            logger.info("Initial scan complete")
        except Exception:
            logger.exception("Initial scan failed")

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Start the daemon and block until ``lifespan`` elapses or the process is cancelled."""
        await self.start_daemon(lifespan=lifespan)
        try:
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
        finally:
            await self.close()

    async def stop(self) -> None:
        self._running = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Daemon stopped")

    async def close(self) -> None:
        await self.stop()
        await self.transport.disconnect()
        close = getattr(self.repository, "close", None)
        if close is not None:
            close()
        logger.info("Orchestrator closed")

    # ------------------------------------------------------------------
    # Timers and subscriptions
    def _every(self, interval: float, name: str, tick: Callable[[], Awaitable[Any]]) -> None:
        async def loop() -> None:
            while self._running:
                await asyncio.sleep(interval)
                try:
                    await tick()
                except Exception:
                    logger.exception(f"Error in {name}")

        self._tasks.append(asyncio.create_task(loop(), name=name))

    def _listen(self, pattern: str, handler: Handler, lifespan: Optional[float]) -> None:
        async def consume() -> None:
            try:
                async for raw_message, message in self.transport.subscribe(
                    pattern, lifespan=lifespan
                ):
                    try:
                        await handler(message)
                    except Exception:
                        logger.exception(f"Error handling message on {message.channel}")
                        await self.transport.nack(raw_message)
                    else:
                        await self.transport.ack(raw_message)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Subscription to {pattern} failed")

        self._tasks.append(asyncio.create_task(consume(), name=f"subscribe:{pattern}"))

    async def progress(self) -> None:
        await self.driver.progress(await self.ledger.list_requests())

    # ------------------------------------------------------------------
    # Handlers
    @staticmethod
    def _request_id(message: BusMessage, prefix: Optional[str] = None) -> Optional[str]:
        request_id = message.payload.get("request_id") or message.request_id
        if not request_id and prefix:
            request_id = channels.tail(message.channel, prefix)
        return request_id

    async def _on_blocked(self, message: BusMessage) -> None:
        event = BlockedEvent(**{**message.payload, "request_id": self._request_id(message)})
        logger.info(f"Blocked workflow event: {event.request_id} at stage {event.stage}")
        await self.decomposer.handle_blocked(event)

    async def _on_stage_completed(self, message: BusMessage) -> None:
        request_id = self._request_id(message)
        stage = message.payload.get("stage")
        index = stage if isinstance(stage, int) else self.catalog.index_of(str(stage))
        await self.repository.update_stage(request_id, index)
        logger.info(f"Stage {index} ({self.catalog[index].name}) completed for {request_id}")

    async def _on_workflow_completed(self, message: BusMessage) -> None:
        request_id = self._request_id(message)
        logger.info(f"Workflow completed: {request_id}")
        await self.ledger.update_status(request_id, LedgerStatus.COMPLETE)
        await self.repository.mark_complete(request_id)
        await remember(self._store_completion_learnings(request_id), f"learnings for {request_id}")

    async def _store_completion_learnings(self, request_id: str) -> None:
        record = await self.repository.get_by_request_id(request_id)
        if record is None:
            return
        duration = (
            (record.completed_at - record.started_at).total_seconds()
            if record.completed_at
            else 0.0
        )
        await self.knowledge.store_learning(
            request_id,
            f"Completed {request_id}: {record.title}",
            {
                "assignee": record.assignee,
                "stages_completed": len(self.catalog),
                "duration_hours": round(duration / 3600, 1),
            },
        )

    async def _on_new_requirement(self, message: BusMessage) -> None:
        await self.scanner.handle_new_requirement(message)

    async def _on_deliverable(self, message: BusMessage) -> None:
        parsed = channels.parse_deliverable(message.channel)
        if parsed is None:
            return
        stage_channel, request_id = parsed
        index = self.catalog.by_channel(stage_channel)
        if index is None:
            logger.debug(f"Ignoring deliverable on unknown stage channel {message.channel}")
            return
        stage = self.catalog[index]

        await remember(
            self.knowledge.cache_deliverable(request_id, stage.name, message.payload),
            f"{stage.name} deliverable for {request_id}",
        )
        if stage.name == CRITIQUE_STAGE and message.payload.get("decision") == "APPROVE":
            await remember(
                self._store_critique_learnings(request_id, message.payload),
                f"critique learnings for {request_id}",
            )

        if index == len(self.catalog) - 1:
            await self.decomposer.on_child_completed(request_id)
        await self.driver.on_deliverable(request_id, index, message.payload)

    async def _store_critique_learnings(self, request_id: str, critique: Dict[str, Any]) -> None:
        for finding in (critique.get("positive_findings") or [])[:3]:
            await self.knowledge.store_learning(
                request_id,
                _describe(finding),
                {"learning_type": "best_practice"},
            )
        for concern in (critique.get("concerns") or [])[:2]:
            await self.knowledge.store_learning(
                request_id,
                _describe(concern),
                {"learning_type": "gotcha"},
            )

    async def _on_heartbeat(self, message: BusMessage) -> None:
        request_id = self._request_id(message, channels.HEARTBEAT_PATTERN)
        if request_id:
            await self.repository.touch_heartbeat(request_id, message.timestamp)

    async def _on_decision(self, message: BusMessage) -> None:
        decision = StrategicDecision(
            **{**message.payload, "request_id": self._request_id(message, channels.DECISIONS_PATTERN)}
        )
        await self.apply_decision(decision)

    async def apply_decision(self, decision: StrategicDecision) -> None:
        request_id = decision.request_id
        kind = decision.decision.upper()
        logger.info(f"Applying decision for {request_id}: {kind} ({decision.reasoning})")
        await remember(self.knowledge.store_decision(decision), f"decision for {request_id}")

        if kind == "APPROVE":
            try:
                await self.ledger.update_status(
                    request_id, LedgerStatus.IN_PROGRESS, "Strategic decision: APPROVE"
                )
                await self.driver.approve(request_id)
            except Exception as e:
                logger.error(f"Failed to resume {request_id} after APPROVE: {e}")
                await self.escalator.publish_human_escalation(
                    {
                        "request_id": request_id,
                        "priority": EscalationReason.NEEDS_MANUAL_INTERVENTION.value,
                        "reason": f"Failed to resume workflow after APPROVE decision: {e}",
                    }
                )
        elif kind == "REQUEST_CHANGES":
            try:
                await self.ledger.update_status(
                    request_id, LedgerStatus.IN_PROGRESS, "Strategic decision: REQUEST_CHANGES"
                )
                await self.driver.restart_from_stage(
                    request_id, 0, f"Strategic decision: {decision.reasoning}"
                )
            except Exception as e:
                logger.error(f"Failed to restart {request_id} after REQUEST_CHANGES: {e}")
                await self.escalator.publish_human_escalation(
                    {
                        "request_id": request_id,
                        "priority": EscalationReason.NEEDS_MANUAL_INTERVENTION.value,
                        "reason": f"Failed to restart workflow after REQUEST_CHANGES decision: {e}",
                    }
                )
        elif kind == "ESCALATE_HUMAN":
            await self.escalator.publish_human_escalation(
                {
                    "request_id": request_id,
                    "priority": EscalationReason.NEEDS_HUMAN_DECISION.value,
                    "reason": decision.reasoning,
                    "strategic_agent": decision.agent,
                    "business_context": decision.business_context,
                }
            )
        else:
            logger.warning(f"Unknown decision {kind} for {request_id} - ignoring")

    async def _on_agent_error(self, message: BusMessage) -> None:
        payload = message.payload
        agent = payload.get("agent") or channels.tail(message.channel, channels.AGENT_ERRORS_PATTERN)
        request_id = self._request_id(message)
        error = payload.get("error", "UNKNOWN")
        logger.error(f"Agent error: {agent} - {error} ({request_id})")

        unavailable = error == EscalationReason.SPECIALIST_UNAVAILABLE.value
        if request_id and (payload.get("critical") or unavailable):
            await self.escalator.escalate(
                request_id,
                EscalationReason.SPECIALIST_UNAVAILABLE,
                {"agent": agent, "error": error, "critical": True},
            )
