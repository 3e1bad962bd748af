"""
End-to-end workflow scenarios.

These run the full stack (orchestrator, coordinator, checkpoints, record
store, audit trail and event log) against a temporary state directory.
"""

import asyncio

import pytest

from phasekeeper.events.bus import EventBus
from phasekeeper.events.sinks import JsonlEventSink
from phasekeeper.models import EventCategory, ItemStage, RecoveryAction, WorkflowStatus
from phasekeeper.orchestrator import WorkflowOrchestrator

pytestmark = pytest.mark.integration

PROJECT = {"project_name": "atlas"}


def phase_items(make_item, phase, count=2):
    return [make_item(f"{phase}-{n}", phase=phase) for n in range(1, count + 1)]


async def approve_when_asked(orchestrator, decided_by="reviewer"):
    """Approve whichever gate the workflow blocks on next."""
    while orchestrator.state.awaiting_approval is None:
        await asyncio.sleep(0.005)
    await asyncio.sleep(0.005)
    orchestrator.approve_gate(orchestrator.state.awaiting_approval, decided_by=decided_by)


class TestFullRun:
    """A workflow from start to completion."""

    @pytest.mark.asyncio
    async def test_three_phases_with_gate_and_transient_failure(
        self, orchestrator, make_item, config
    ):
        attempts: dict[str, int] = {}

        async def worker(item, reporter):
            attempts[item.item_id] = attempts.get(item.item_id, 0) + 1
            reporter.progress(ItemStage.CREATING)
            if item.item_id == "research-1" and attempts[item.item_id] == 1:
                reporter.fail("ETIMEDOUT", detail="upstream slow")
                return
            reporter.progress(ItemStage.WRITING)
            reporter.progress(ItemStage.VERIFYING)
            reporter.complete()

        state = orchestrator.start("new-project", PROJECT)

        await orchestrator.run_phase(worker, phase_items(make_item, "discovery"))
        await orchestrator.advance_phase()

        await orchestrator.run_phase(worker, phase_items(make_item, "research"))
        approver = asyncio.create_task(approve_when_asked(orchestrator))
        await asyncio.wait_for(orchestrator.advance_phase(), timeout=5)
        await approver

        await orchestrator.run_phase(worker, phase_items(make_item, "planning", count=3))
        await orchestrator.advance_phase()

        assert state.status == WorkflowStatus.COMPLETED
        assert attempts["research-1"] == 2
        assert orchestrator.tracker.get("research-1").retry_count == 1
        assert orchestrator.status().progress_percentage == pytest.approx(100.0)
        assert state.gates["post-research"].decided_by == "reviewer"

        [entry] = orchestrator.audit_entries()
        assert entry.item_id == "research-1"
        assert entry.action == RecoveryAction.RETRY
        assert entry.error_code == "ETIMEDOUT"

        logged = [
            e.category
            for e in JsonlEventSink(config.storage.state_dir).read(state.workflow_id)
        ]
        assert logged[0] == EventCategory.WORKFLOW_STARTED
        assert logged[-1] == EventCategory.WORKFLOW_COMPLETED
        assert logged.index(EventCategory.GATE_OPENED) < logged.index(
            EventCategory.GATE_RESOLVED
        )
        assert logged.count(EventCategory.PHASE_TRANSITION) == 3

        stored = orchestrator.store.load(state.workflow_id)
        assert stored.state.status == WorkflowStatus.COMPLETED
        assert stored.state.invariant_errors() == []


class TestCrashAndResume:
    """A process dies mid-phase and a new one picks the workflow up."""

    @pytest.mark.asyncio
    async def test_interrupted_item_is_redone_after_resume(self, orchestrator, make_item, config):
        hold = asyncio.Event()

        async def first_run(item, reporter):
            reporter.progress(ItemStage.CREATING)
            if item.item_id == "discovery-2":
                reporter.progress(ItemStage.WRITING)
                await hold.wait()
            reporter.complete()

        state = orchestrator.start("new-project", PROJECT)
        running = asyncio.create_task(
            orchestrator.run_phase(first_run, phase_items(make_item, "discovery"))
        )
        while orchestrator.tracker.get("discovery-2").stage != ItemStage.WRITING:
            await asyncio.sleep(0.005)
        progress_at_crash = orchestrator.status().progress_percentage

        # The process dies: the task is torn down without cancel()
        running.cancel()
        with pytest.raises(asyncio.CancelledError):
            await running

        record = orchestrator.store.load(state.workflow_id)
        interrupted = {i.item_id: i.stage for i in record.items}
        assert interrupted == {
            "discovery-1": ItemStage.COMPLETED,
            "discovery-2": ItemStage.WRITING,
        }

        resumed = WorkflowOrchestrator(config, bus=EventBus())
        resumed.resume(state.workflow_id)
        seen: list[float] = []
        resumed.tracker.add_listener(
            lambda item, previous: seen.append(resumed.tracker.percentage())
        )
        calls: list[str] = []

        async def second_run(item, reporter):
            calls.append(item.item_id)
            reporter.progress(ItemStage.WRITING)
            reporter.progress(ItemStage.VERIFYING)
            reporter.complete()

        result = await asyncio.wait_for(resumed.run_phase(second_run), timeout=5)

        assert calls == ["discovery-2"]
        assert result.completed == ["discovery-2"]
        assert resumed.tracker.get("discovery-2").retry_count == 0
        assert min(seen) >= progress_at_crash
        assert seen == sorted(seen)

        await resumed.advance_phase()
        assert resumed.state.current_phase == "research"
