"""Heartbeat and max-duration monitoring."""

from datetime import datetime, timedelta, timezone

import pytest

from stagecraft.contracts import EscalationReason, LedgerEntry, LedgerStatus, WorkflowState
from stagecraft.heartbeat import HeartbeatMonitor

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class StateTable:
    def __init__(self) -> None:
        self.states = {}

    def set(self, request_id, started_ago, beat_ago=None):
        self.states[request_id] = WorkflowState(
            request_id=request_id,
            state=LedgerStatus.IN_PROGRESS,
            current_stage=3,
            started_at=NOW - started_ago,
            last_heartbeat=NOW - beat_ago if beat_ago is not None else None,
        )

    async def __call__(self, request_id):
        return self.states.get(request_id)


@pytest.fixture
def states():
    return StateTable()


@pytest.fixture
def monitor(ledger, states, escalator):
    return HeartbeatMonitor(
        ledger, states, escalator, max_duration=8 * 3600, heartbeat_timeout=30 * 60
    )


@pytest.mark.asyncio
async def test_stale_heartbeat_escalates_once(monitor, ledger, states, transport):
    await ledger.add_request(LedgerEntry(id="REQ-1", status=LedgerStatus.IN_PROGRESS))
    states.set("REQ-1", started_ago=timedelta(hours=2), beat_ago=timedelta(minutes=31))

    assert await monitor.sweep(NOW) == [("REQ-1", EscalationReason.HEARTBEAT_TIMEOUT)]
    entry = await ledger.get_request("REQ-1")
    assert entry.status == LedgerStatus.ESCALATED
    assert entry.reason == "HEARTBEAT_TIMEOUT"

    assert await monitor.sweep(NOW + timedelta(minutes=5)) == []
    (event,) = transport.published("escalations.*")
    assert event.payload["context"]["timeout_minutes"] == 31
    assert event.payload["priority"] == "HIGH"


@pytest.mark.asyncio
async def test_recent_heartbeat_is_fine(monitor, ledger, states):
    await ledger.add_request(LedgerEntry(id="REQ-1", status=LedgerStatus.IN_PROGRESS))
    states.set("REQ-1", started_ago=timedelta(hours=2), beat_ago=timedelta(minutes=29))

    assert await monitor.sweep(NOW) == []
    assert (await ledger.get_request("REQ-1")).status == LedgerStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_max_duration_checked_first(monitor, ledger, states, transport):
    await ledger.add_request(LedgerEntry(id="REQ-1", status=LedgerStatus.IN_PROGRESS))
    states.set("REQ-1", started_ago=timedelta(hours=9), beat_ago=timedelta(hours=1))

    assert await monitor.sweep(NOW) == [("REQ-1", EscalationReason.MAX_DURATION_EXCEEDED)]
    (event,) = transport.published("escalations.*")
    assert event.payload["reason"] == "MAX_DURATION_EXCEEDED"
    assert event.payload["context"]["duration_hours"] == 9


@pytest.mark.asyncio
async def test_orphaned_workflow_is_only_logged(monitor, ledger, transport):
    await ledger.add_request(LedgerEntry(id="REQ-1", status=LedgerStatus.IN_PROGRESS))

    assert await monitor.sweep(NOW) == []
    assert transport.published("escalations.*") == []


@pytest.mark.asyncio
async def test_only_in_progress_entries_are_checked(monitor, ledger, states):
    await ledger.add_request(LedgerEntry(id="REQ-1", status=LedgerStatus.BLOCKED))
    states.set("REQ-1", started_ago=timedelta(hours=20), beat_ago=timedelta(hours=5))

    assert await monitor.sweep(NOW) == []


@pytest.mark.asyncio
async def test_failing_lookup_does_not_stop_sweep(ledger, states, escalator):
    async def lookup(request_id):
        if request_id == "REQ-BAD":
            raise RuntimeError("bus unavailable")
        return await states(request_id)

    monitor = HeartbeatMonitor(ledger, lookup, escalator, 8 * 3600, 30 * 60)
    await ledger.add_request(LedgerEntry(id="REQ-BAD", status=LedgerStatus.IN_PROGRESS))
    await ledger.add_request(LedgerEntry(id="REQ-OK", status=LedgerStatus.IN_PROGRESS))
    states.set("REQ-OK", started_ago=timedelta(hours=1), beat_ago=timedelta(hours=1))

    assert await monitor.sweep(NOW) == [("REQ-OK", EscalationReason.HEARTBEAT_TIMEOUT)]
