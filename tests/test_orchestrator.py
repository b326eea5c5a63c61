"""Daemon lifecycle, bus handlers and strategic decisions."""

import asyncio

import pytest

from stagecraft import channels
from stagecraft.config import OrchestratorConfig, StagecraftConfig
from stagecraft.contracts import (
    BusMessage,
    DispatchError,
    LedgerEntry,
    LedgerStatus,
    StrategicDecision,
    WorkflowStatus,
)
from stagecraft.ledger import InMemoryLedger
from stagecraft.orchestrator import Orchestrator
from stagecraft.persistence import WorkflowRecord


class FailingDispatcher:
    async def start_workflow(self, request_id, title, assignee, context=None):
        raise DispatchError("specialists offline")

    async def resume_from_stage(self, request_id, title, assignee, stage_index, context=None):
        raise DispatchError("specialists offline")

    async def restart_from_stage(self, request_id, stage_index, reason):
        raise DispatchError("specialists offline")

    async def get_status(self, request_id):
        return None


def _config(tmp_path):
    return StagecraftConfig(
        orchestrator=OrchestratorConfig(
            escalation_dir=str(tmp_path / "escalations"),
            scan_interval=3600,
            progress_interval=3600,
            heartbeat_interval=3600,
            reconciliation_interval=3600,
            state_request_timeout=0.2,
        )
    )


async def _settle(rounds: int = 3) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0.02)


async def _deliver(transport, catalog, request_id, index, payload=None):
    await transport.publish(
        channels.deliverable(catalog[index], request_id),
        BusMessage(request_id=request_id, payload=payload or {"status": "DONE"}),
    )
    await _settle()


@pytest.fixture
def make_orchestrator(tmp_path, transport, repository):
    def _make(entries=(), **kwargs):
        return Orchestrator(
            config=_config(tmp_path),
            transport=transport,
            repository=repository,
            ledger=InMemoryLedger(entries),
            **kwargs,
        )

    return _make


@pytest.mark.asyncio
async def test_daemon_drives_workflow_to_completion(make_orchestrator, transport, repository):
    orch = make_orchestrator([LedgerEntry(id="REQ-BIN-1", title="Bin labels")])
    catalog = orch.catalog

    await orch.start_daemon()
    try:
        assert orch.running
        assert [m.channel for m in transport.published("work.*")] == ["work.research"]

        await _deliver(transport, catalog, "REQ-BIN-1", 0)
        assert transport.published("work.*")[-1].channel == "work.critique"

        await _deliver(
            transport,
            catalog,
            "REQ-BIN-1",
            1,
            {
                "status": "APPROVED",
                "decision": "APPROVE",
                "positive_findings": ["Small scope", "Clear owner", "Has tests", "Extra"],
                "concerns": [{"description": "Label printer firmware"}],
            },
        )
        for index in range(2, len(catalog)):
            assert transport.published("work.*")[-1].channel == f"work.{catalog[index].name}"
            await _deliver(transport, catalog, "REQ-BIN-1", index)

        assert len(transport.published(channels.WORKFLOW_COMPLETED)) == 1
        assert (await orch.ledger.get_request("REQ-BIN-1")).status == LedgerStatus.COMPLETE
        record = await repository.get_by_request_id("REQ-BIN-1")
        assert record.status == WorkflowStatus.COMPLETE

        learnings = [item["metadata"].get("learning_type") for item in orch.knowledge.learnings]
        assert learnings.count("best_practice") == 3
        assert learnings.count("gotcha") == 1
        contents = [item["content"] for item in orch.knowledge.learnings]
        assert "Completed REQ-BIN-1: Bin labels" in contents
        assert ("REQ-BIN-1", "research") in orch.knowledge.deliverables
    finally:
        await orch.close()
    assert not orch.running


@pytest.mark.asyncio
async def test_blocked_critique_decomposes_and_resumes(make_orchestrator, transport, repository):
    orch = make_orchestrator([LedgerEntry(id="REQ-1", title="Stock sync")])
    catalog = orch.catalog
    await orch.start_daemon()
    try:
        await _deliver(transport, catalog, "REQ-1", 0)
        await _deliver(
            transport,
            catalog,
            "REQ-1",
            1,
            {
                "status": "BLOCKED",
                "decision": "BLOCK",
                "summary": (
                    "❌ **Missing index** - Slow lookups\n"
                    "❌ **No retries** - Sync drops rows"
                ),
            },
        )
        await transport.publish(
            channels.STAGE_BLOCKED,
            BusMessage(request_id="REQ-1", payload={"stage": "critique", "reason": "2 issues"}),
        )
        await _settle(5)

        assert (await orch.ledger.get_request("REQ-1")).status == LedgerStatus.BLOCKED
        subs = transport.published(channels.NEW_SUB_REQUIREMENTS)
        children = [m.payload["request_id"] for m in subs]
        assert len(children) == 2
        for child in children:
            assert (await orch.ledger.get_request(child)).status == LedgerStatus.IN_PROGRESS
            assert (await repository.get_by_request_id(child)).depth == 1

        for child in children:
            for index in range(len(catalog)):
                await _deliver(transport, catalog, child, index)
        await _settle(5)

        assert (await orch.ledger.get_request("REQ-1")).status == LedgerStatus.IN_PROGRESS
        parent = await repository.get_by_request_id("REQ-1")
        assert parent.status == WorkflowStatus.RUNNING
        assert parent.current_stage == 2
        assert [m.request_id for m in transport.published("work.backend")].count("REQ-1") == 1
    finally:
        await orch.close()


@pytest.mark.asyncio
async def test_heartbeat_and_agent_errors(make_orchestrator, transport, repository, tmp_path):
    orch = make_orchestrator([LedgerEntry(id="REQ-2", status=LedgerStatus.IN_PROGRESS)])
    await repository.upsert(WorkflowRecord(request_id="REQ-2", status=WorkflowStatus.RUNNING))
    await orch.start_daemon()
    try:
        beat = BusMessage(payload={"stage": "qa"})
        await transport.publish(channels.heartbeat("REQ-2"), beat)
        await transport.publish(
            "errors.agent.qa",
            BusMessage(payload={"request_id": "REQ-2", "error": "SPECIALIST_UNAVAILABLE"}),
        )
        await _settle()

        record = await repository.get_by_request_id("REQ-2")
        assert record.last_heartbeat == beat.timestamp
        assert record.status == WorkflowStatus.ESCALATED
        assert (await orch.ledger.get_request("REQ-2")).reason == "SPECIALIST_UNAVAILABLE"
        assert (tmp_path / "escalations" / "REQ-2.json").exists()
    finally:
        await orch.close()


@pytest.mark.asyncio
async def test_run_stops_after_lifespan(make_orchestrator):
    orch = make_orchestrator()
    await asyncio.wait_for(orch.run(lifespan=0.1), timeout=2)
    assert not orch.running


@pytest.mark.asyncio
async def test_startup_recovery_resets_lost_workflows(make_orchestrator):
    orch = make_orchestrator([LedgerEntry(id="REQ-LOST", status=LedgerStatus.IN_PROGRESS)])
    await orch.initialize()

    entry = await orch.ledger.get_request("REQ-LOST")
    assert entry.status == LedgerStatus.NEW
    await orch.close()


async def _blocked(orch, repository, request_id="REQ-1", stage=1):
    await orch.ledger.add_request(LedgerEntry(id=request_id, status=LedgerStatus.BLOCKED))
    await repository.upsert(
        WorkflowRecord(
            request_id=request_id,
            title="Order export",
            assignee="sales",
            status=WorkflowStatus.BLOCKED,
            current_stage=stage,
        )
    )


@pytest.mark.asyncio
async def test_approve_decision_resumes_at_implementation(make_orchestrator, transport, repository):
    orch = make_orchestrator()
    await _blocked(orch, repository)

    await orch.apply_decision(
        StrategicDecision(request_id="REQ-1", decision="APPROVE", reasoning="Risk accepted")
    )

    assert (await orch.ledger.get_request("REQ-1")).status == LedgerStatus.IN_PROGRESS
    (order,) = transport.published("work.*")
    assert order.channel == "work.backend"
    assert orch.knowledge.decisions[0].reasoning == "Risk accepted"


@pytest.mark.asyncio
async def test_request_changes_restarts_from_research(make_orchestrator, transport, repository):
    orch = make_orchestrator()
    await _blocked(orch, repository, stage=3)

    await orch.apply_decision(
        StrategicDecision(request_id="REQ-1", decision="request_changes", reasoning="Too broad")
    )

    (order,) = transport.published("work.*")
    assert order.channel == "work.research"
    assert order.payload["reason"] == "Strategic decision: Too broad"
    assert (await repository.get_by_request_id("REQ-1")).current_stage == 0


@pytest.mark.asyncio
async def test_escalate_human_decision(make_orchestrator, transport):
    orch = make_orchestrator()

    await orch.apply_decision(
        StrategicDecision(
            request_id="REQ-1", decision="ESCALATE_HUMAN", reasoning="Budget", agent="cfo-bot"
        )
    )

    (event,) = transport.published(channels.HUMAN_ESCALATIONS)
    assert event.payload["priority"] == "NEEDS_HUMAN_DECISION"
    assert event.payload["strategic_agent"] == "cfo-bot"


@pytest.mark.asyncio
async def test_failed_approve_goes_to_human(make_orchestrator, transport, repository):
    orch = make_orchestrator(dispatcher=FailingDispatcher())
    await _blocked(orch, repository)

    await orch.apply_decision(StrategicDecision(request_id="REQ-1", decision="APPROVE"))

    (event,) = transport.published(channels.HUMAN_ESCALATIONS)
    assert event.payload["priority"] == "NEEDS_MANUAL_INTERVENTION"
    assert "specialists offline" in event.payload["reason"]


@pytest.mark.asyncio
async def test_decision_arrives_over_bus(make_orchestrator, transport, repository):
    orch = make_orchestrator()
    await _blocked(orch, repository)
    await orch.start_daemon()
    try:
        await transport.publish(
            "strategic.decisions.REQ-1", BusMessage(payload={"decision": "APPROVE"})
        )
        await _settle()
        assert [m.channel for m in transport.published("work.*")] == ["work.backend"]
    finally:
        await orch.close()
