"""Pipeline driver: contiguous progress, single dispatch and restarts."""

import pytest

from stagecraft.contracts import DispatchError, LedgerEntry, LedgerStatus, WorkflowStatus
from stagecraft.driver import PipelineDriver


async def _start(driver, request_id="REQ-1"):
    await driver.start(LedgerEntry(id=request_id, title="Pricing rules", assignee="sales"))


@pytest.mark.asyncio
async def test_start_records_and_dispatches_first_stage(driver, repository, transport):
    await _start(driver)

    record = await repository.get_by_request_id("REQ-1")
    assert record.status == WorkflowStatus.RUNNING
    assert record.current_stage == 0
    assert record.metadata["priority"] == "medium"

    (order,) = transport.published("work.*")
    assert order.channel == "work.research"
    assert order.payload["assignee"] == "sales"
    assert order.payload["stage_index"] == 0


@pytest.mark.asyncio
async def test_start_routes_assignee_from_request_number(driver, repository):
    await driver.start(LedgerEntry(id="REQ-VENDOR-12"))
    assert (await repository.get_by_request_id("REQ-VENDOR-12")).assignee == "procurement"


@pytest.mark.asyncio
async def test_advance_stops_at_first_gap(driver, repository, transport, deliver):
    await _start(driver)
    await deliver("REQ-1", 0, 2)

    assert await driver.advance("REQ-1") == 1
    assert (await repository.get_by_request_id("REQ-1")).current_stage == 1
    assert [m.channel for m in transport.published("work.*")] == ["work.research", "work.critique"]

    await deliver("REQ-1", 1)
    assert await driver.advance("REQ-1") == 3
    assert transport.published("work.*")[-1].channel == "work.frontend"


@pytest.mark.asyncio
async def test_advance_never_dispatches_a_stage_twice(driver, transport, deliver):
    await _start(driver)
    await deliver("REQ-1", 0)

    assert await driver.advance("REQ-1") == 1
    assert await driver.advance("REQ-1") is None
    assert len(transport.published("work.critique")) == 1


@pytest.mark.asyncio
async def test_advance_waits_for_first_deliverable(driver, transport):
    await _start(driver)
    assert await driver.advance("REQ-1") is None
    assert len(transport.published("work.*")) == 1


@pytest.mark.asyncio
async def test_completion_event_published_once(driver, transport, catalog, deliver):
    await _start(driver)
    await deliver("REQ-1", *range(len(catalog)))

    assert await driver.advance("REQ-1") is None
    assert await driver.advance("REQ-1") is None

    events = transport.published("events.workflow.completed")
    assert len(events) == 1
    assert events[0].payload["request_id"] == "REQ-1"
    assert events[0].payload["assignee"] == "sales"


@pytest.mark.asyncio
async def test_restart_ignores_older_deliverables(driver, repository, transport, deliver):
    await _start(driver)
    await deliver("REQ-1", 0, 1, 2)

    await driver.restart_from_stage("REQ-1", 0, "Strategic decision: rework scope")

    record = await repository.get_by_request_id("REQ-1")
    assert record.current_stage == 0
    assert record.metadata["restart_reason"] == "Strategic decision: rework scope"
    restart = transport.published("work.*")[-1]
    assert restart.channel == "work.research"
    assert restart.payload["reason"] == "Strategic decision: rework scope"

    assert await driver.completed_stages("REQ-1") == 3
    assert await driver.first_missing_stage("REQ-1") == 0
    assert await driver.advance("REQ-1") is None

    await deliver("REQ-1", 0)
    assert await driver.advance("REQ-1") == 1


@pytest.mark.asyncio
async def test_first_missing_stage_restarts_when_everything_delivered(driver, catalog, deliver):
    await deliver("REQ-1", *range(len(catalog)))
    assert await driver.first_missing_stage("REQ-1") == 0


@pytest.mark.asyncio
async def test_approve_resumes_at_implementation(driver, repository, transport):
    await _start(driver)
    await driver.approve("REQ-1")

    assert (await repository.get_by_request_id("REQ-1")).current_stage == 2
    assert transport.published("work.*")[-1].channel == "work.backend"


@pytest.mark.asyncio
async def test_blocking_deliverable_does_not_advance(driver, transport, deliver):
    await _start(driver)
    await deliver("REQ-1", 0)
    await driver.advance("REQ-1")
    await deliver("REQ-1", 1, payload={"status": "BLOCKED", "decision": "BLOCK"})

    assert await driver.on_deliverable("REQ-1", 1, {"status": "BLOCKED"}) is None
    assert transport.published("work.backend") == []


@pytest.mark.asyncio
async def test_deliverable_ignored_unless_running(driver, repository, deliver):
    await _start(driver)
    await repository.mark_blocked("REQ-1", "waiting")
    await deliver("REQ-1", 0)

    assert await driver.on_deliverable("REQ-1", 0, {"status": "DONE"}) is None
    assert await driver.on_deliverable("REQ-404", 0, {}) is None


@pytest.mark.asyncio
async def test_progress_only_touches_in_progress_entries(driver, transport, deliver):
    await _start(driver, "REQ-1")
    await _start(driver, "REQ-2")
    await deliver("REQ-1", 0)
    await deliver("REQ-2", 0)

    await driver.progress(
        [
            LedgerEntry(id="REQ-1", status=LedgerStatus.IN_PROGRESS),
            LedgerEntry(id="REQ-2", status=LedgerStatus.BLOCKED),
        ]
    )

    assert [m.request_id for m in transport.published("work.critique")] == ["REQ-1"]


@pytest.mark.asyncio
async def test_progress_tick_holds_a_blocked_critique(driver, transport, deliver):
    await _start(driver)
    await deliver("REQ-1", 0)
    assert await driver.advance("REQ-1") == 1
    await deliver("REQ-1", 1, payload={"status": "BLOCKED", "decision": "BLOCK"})

    await driver.progress([LedgerEntry(id="REQ-1", status=LedgerStatus.IN_PROGRESS)])

    assert transport.published("work.backend") == []


@pytest.mark.asyncio
async def test_failed_advance_is_retried_on_next_tick(
    transport, repository, dispatcher, catalog, deliver
):
    class FlakyDispatcher:
        def __init__(self) -> None:
            self.failures = 1

        async def start_workflow(self, *args, **kwargs):
            await dispatcher.start_workflow(*args, **kwargs)

        async def resume_from_stage(self, *args, **kwargs):
            if self.failures:
                self.failures -= 1
                raise DispatchError("specialists offline")
            await dispatcher.resume_from_stage(*args, **kwargs)

        async def restart_from_stage(self, *args, **kwargs):
            await dispatcher.restart_from_stage(*args, **kwargs)

        async def get_status(self, request_id):
            return await dispatcher.get_status(request_id)

    driver = PipelineDriver(transport, repository, FlakyDispatcher(), catalog)
    await _start(driver)
    await deliver("REQ-1", 0)

    with pytest.raises(DispatchError):
        await driver.advance("REQ-1")
    record = await repository.get_by_request_id("REQ-1")
    assert record.status == WorkflowStatus.FAILED
    assert record.current_stage == 0

    assert await driver.advance("REQ-1") == 1
    assert await driver.advance("REQ-1") is None
    record = await repository.get_by_request_id("REQ-1")
    assert record.status == WorkflowStatus.RUNNING
    assert record.current_stage == 1
    assert len(transport.published("work.critique")) == 1


@pytest.mark.asyncio
async def test_readmitting_a_new_request_starts_over(driver, repository, transport, deliver):
    await _start(driver)
    await deliver("REQ-1", 0, 1)
    await driver.advance("REQ-1")
    await repository.update_stage("REQ-1", 3)

    await _start(driver)

    record = await repository.get_by_request_id("REQ-1")
    assert record.current_stage == 0
    assert record.status == WorkflowStatus.RUNNING
    assert await driver.advance("REQ-1") is None
    assert transport.published("work.*")[-1].channel == "work.research"
