"""Decomposition of blocked critiques into sub-requirements."""

import json

import pytest

from stagecraft import channels
from stagecraft.contracts import (
    BlockedEvent,
    BusMessage,
    Issue,
    LedgerEntry,
    LedgerStatus,
    WorkflowStatus,
)
from stagecraft.decomposer import Decomposer, lineage_depth
from stagecraft.dispatch import BusDispatcher
from stagecraft.driver import PipelineDriver
from stagecraft.escalation import Escalator
from stagecraft.persistence import WorkflowRecord
from stagecraft.transports.inmemory import InMemoryTransport

CRITIQUE_SUMMARY = (
    "Review of the proposal\n"
    "❌ **Missing bin index** - Stock lookups scan the whole table\n"
    "✅ **Clear scope** - Fine as written\n"
    "❌ **No auth on export** - Anyone can download invoices\n"
)


@pytest.fixture
def decomposer(transport, repository, ledger, driver, escalator):
    return Decomposer(transport, repository, ledger, driver, escalator, max_depth=3)


async def _blocked_at_critique(
    repository, ledger, transport, catalog, request_id="REQ-1", summary=CRITIQUE_SUMMARY
):
    await ledger.add_request(
        LedgerEntry(id=request_id, title="Warehouse export", status=LedgerStatus.IN_PROGRESS)
    )
    await repository.upsert(
        WorkflowRecord(
            request_id=request_id,
            title="Warehouse export",
            assignee="warehouse",
            status=WorkflowStatus.RUNNING,
            current_stage=1,
        )
    )
    await transport.publish(
        channels.deliverable(catalog[0], request_id), BusMessage(payload={"status": "DONE"})
    )
    await transport.publish(
        channels.deliverable(catalog[1], request_id),
        BusMessage(payload={"status": "BLOCKED", "decision": "BLOCK", "summary": summary}),
    )


def test_lineage_depth():
    assert lineage_depth("REQ-1") == 0
    assert lineage_depth("REQ-1-SUB2-1700000000000") == 1
    assert lineage_depth("REQ-1-SUB1-1-SUB3-2-SUB1-3") == 3
    assert lineage_depth("REQ-1-SUB-SUB-SUB") == 3
    assert lineage_depth("REQ-SUBSCRIPTIONS-4") == 0


def test_parse_issues_from_summary():
    issues = Decomposer.parse_issues({"summary": CRITIQUE_SUMMARY})
    assert [i.title for i in issues] == ["Missing bin index", "No auth on export"]
    assert issues[0].description == "Stock lookups scan the whole table"
    assert all(i.priority == "P0" for i in issues)


def test_parse_issues_prefers_blockers():
    issues = Decomposer.parse_issues(
        {"summary": CRITIQUE_SUMMARY},
        [
            {"title": "Schema", "description": "Add column", "priority": "P2", "type": "database"},
            "Flaky job",
        ],
    )
    assert [(i.title, i.priority, i.type) for i in issues] == [
        ("Schema", "P2", "database"),
        ("Flaky job", "P1", "backend"),
    ]


def test_create_sub_requirements_ids_and_depth():
    subs = Decomposer.create_sub_requirements(
        "REQ-1", [Issue(title="a", description="a"), Issue(title="b", description="b")], depth=1
    )
    assert [s.request_id.rsplit("-", 1)[0] for s in subs] == ["REQ-1-SUB1", "REQ-1-SUB2"]
    assert all(s.depth == 2 and s.parent == "REQ-1" for s in subs)
    assert all(lineage_depth(s.request_id) == 1 for s in subs)


@pytest.mark.asyncio
async def test_max_depth_escalates_without_decomposing(
    decomposer, repository, ledger, transport, catalog, tmp_path
):
    request_id = "REQ-1-SUB1-1-SUB1-2-SUB1-3"
    await _blocked_at_critique(repository, ledger, transport, catalog, request_id)

    await decomposer.handle_blocked(
        BlockedEvent(request_id=request_id, stage="critique", reason="too big")
    )

    assert transport.published(channels.NEW_SUB_REQUIREMENTS) == []
    entry = await ledger.get_request(request_id)
    assert entry.status == LedgerStatus.ESCALATED
    assert entry.reason == "MAX_DEPTH_EXCEEDED"
    record = json.loads((tmp_path / "escalations" / f"{request_id}.json").read_text())
    assert record["context"]["depth"] == 3
    assert record["context"]["max_depth"] == 3


@pytest.mark.asyncio
async def test_recorded_depth_wins_over_lineage(decomposer, repository, ledger, transport, catalog):
    await _blocked_at_critique(repository, ledger, transport, catalog, "REQ-9")
    await repository.upsert(
        WorkflowRecord(request_id="REQ-9", status=WorkflowStatus.RUNNING, metadata={"depth": 3})
    )

    await decomposer.handle_blocked(BlockedEvent(request_id="REQ-9", stage="critique"))

    assert (await ledger.get_request("REQ-9")).reason == "MAX_DEPTH_EXCEEDED"


@pytest.mark.asyncio
async def test_decompose_and_resume_parent(decomposer, repository, ledger, transport, catalog):
    await _blocked_at_critique(repository, ledger, transport, catalog)

    await decomposer.handle_blocked(
        BlockedEvent(request_id="REQ-1", stage="critique", reason="2 blocking issues")
    )

    subs = transport.published(channels.NEW_SUB_REQUIREMENTS)
    assert len(subs) == 2
    assert all(m.payload["parent"] == "REQ-1" and m.payload["depth"] == 1 for m in subs)
    assert all(m.payload["source"] == "decomposition" for m in subs)
    children = [m.payload["request_id"] for m in subs]

    parent = await ledger.get_request("REQ-1")
    assert parent.status == LedgerStatus.BLOCKED
    assert parent.reason == "Waiting for 2 sub-requirements to complete"
    assert (await repository.get_by_request_id("REQ-1")).status == WorkflowStatus.BLOCKED
    assert set(decomposer.watches) == {"REQ-1"}

    assert await decomposer.on_child_completed(children[0]) is True
    assert transport.published("work.backend") == []
    manifest = await transport.last_message(channels.sub_requirements("REQ-1"))
    assert manifest.payload["completed"] == children[:1]

    await decomposer.on_child_completed(children[1])

    parent = await ledger.get_request("REQ-1")
    assert parent.status == LedgerStatus.IN_PROGRESS
    record = await repository.get_by_request_id("REQ-1")
    assert record.status == WorkflowStatus.RUNNING
    assert record.current_stage == 2
    (order,) = transport.published("work.backend")
    assert order.request_id == "REQ-1"
    assert decomposer.watches == {}


@pytest.mark.asyncio
async def test_untracked_child_is_ignored(decomposer):
    assert await decomposer.on_child_completed("REQ-77") is False


@pytest.mark.asyncio
async def test_spurious_block_approves(decomposer, repository, ledger, transport, catalog):
    await _blocked_at_critique(repository, ledger, transport, catalog, summary="Looks fine overall")

    await decomposer.handle_blocked(BlockedEvent(request_id="REQ-1", stage="critique"))

    assert transport.published(channels.NEW_SUB_REQUIREMENTS) == []
    assert len(transport.published("work.backend")) == 1
    assert (await repository.get_by_request_id("REQ-1")).current_stage == 2


@pytest.mark.asyncio
async def test_publish_failure_escalates_for_human_decision(repository, ledger, catalog, tmp_path):
    class FlakyTransport(InMemoryTransport):
        async def publish(self, channel, message):
            if channel == channels.NEW_SUB_REQUIREMENTS:
                raise ConnectionError("bus down")
            await super().publish(channel, message)

    transport = FlakyTransport()
    driver = PipelineDriver(
        transport, repository, BusDispatcher(transport, repository, catalog), catalog
    )
    escalator = Escalator(ledger, repository, transport, tmp_path / "escalations")
    decomposer = Decomposer(transport, repository, ledger, driver, escalator)
    await _blocked_at_critique(repository, ledger, transport, catalog)

    await decomposer.handle_blocked(BlockedEvent(request_id="REQ-1", stage="critique"))

    entry = await ledger.get_request("REQ-1")
    assert entry.status == LedgerStatus.ESCALATED
    assert entry.reason == "NEEDS_HUMAN_DECISION"
    assert decomposer.watches == {}
    (event,) = transport.published("escalations.*")
    assert "bus down" in event.payload["context"]["reason"]


@pytest.mark.asyncio
async def test_block_outside_critique_just_marks_blocked(
    decomposer, repository, ledger, transport, catalog
):
    await _blocked_at_critique(repository, ledger, transport, catalog)

    await decomposer.handle_blocked(
        BlockedEvent(request_id="REQ-1", stage="qa", reason="Test env unavailable")
    )

    assert (await ledger.get_request("REQ-1")).status == LedgerStatus.BLOCKED
    record = await repository.get_by_request_id("REQ-1")
    assert record.status == WorkflowStatus.BLOCKED
    assert record.metadata["blocked_reason"] == "Test env unavailable"
    assert transport.published(channels.NEW_SUB_REQUIREMENTS) == []
