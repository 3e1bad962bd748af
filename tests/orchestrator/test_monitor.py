"""Tests for the Stuck-State Detector."""

import pytest

from phasekeeper.config.models import MonitorConfig
from phasekeeper.models import EventCategory, ItemStage, WorkflowState, WorkflowStatus
from phasekeeper.orchestrator import ProgressTracker, StuckStateDetector


@pytest.fixture
def tracker(clock) -> ProgressTracker:
    return ProgressTracker(clock)


@pytest.fixture
def state(clock) -> WorkflowState:
    return WorkflowState(
        workflow_id="wf-1",
        workflow_type="new-project",
        phases=["discovery", "research"],
        current_phase="discovery",
        started_at=clock(),
        updated_at=clock(),
        phase_started_at=clock(),
    )


def detector_for(clock, bus=None, stall=900.0, grace=600.0) -> StuckStateDetector:
    config = MonitorConfig(stall_threshold_seconds=stall, no_progress_grace_seconds=grace)
    return StuckStateDetector(config, bus=bus, clock=clock)


def categories(events):
    return [e.category for e in events]


# =============================================================================
# Stall detection
# =============================================================================


class TestStall:
    """Tests for StuckStateDetected."""

    def test_quiet_phase_is_not_stuck(self, clock, state, tracker, make_item):
        tracker.register(make_item("a", last_update=clock()))
        detector = detector_for(clock, grace=10_000)

        clock.advance(899)

        assert detector.check(state, tracker) == []

    def test_stall_reported_once_per_episode(self, clock, state, tracker, make_item):
        tracker.register(make_item("a", last_update=clock()))
        detector = detector_for(clock, grace=10_000)

        clock.advance(901)
        first = detector.check(state, tracker)
        clock.advance(300)
        second = detector.check(state, tracker)

        assert categories(first) == [EventCategory.STUCK_STATE_DETECTED]
        assert first[0].payload["threshold_seconds"] == 900.0
        assert first[0].payload["elapsed_seconds"] == 901.0
        assert second == []

    def test_activity_rearms_detection(self, clock, state, tracker, make_item):
        tracker.register(make_item("a", last_update=clock()))
        detector = detector_for(clock, grace=10_000)

        clock.advance(901)
        assert detector.check(state, tracker)

        tracker.touch("a")
        assert detector.check(state, tracker) == []

        clock.advance(901)
        events = detector.check(state, tracker)

        assert categories(events) == [EventCategory.STUCK_STATE_DETECTED]

    def test_stage_change_counts_as_activity(self, clock, state, tracker, make_item):
        tracker.register(make_item("a", last_update=clock()))
        detector = detector_for(clock, grace=10_000)

        clock.advance(800)
        tracker.transition("a", ItemStage.VALIDATING)
        clock.advance(800)

        assert detector.check(state, tracker) == []


# =============================================================================
# No progress
# =============================================================================


class TestNoProgress:
    """Tests for NoProgress."""

    def test_reported_once_per_phase_visit(self, clock, state, tracker, make_item):
        tracker.register(make_item("a", last_update=clock()))
        detector = detector_for(clock, stall=10_000)

        clock.advance(601)
        first = detector.check(state, tracker)
        clock.advance(601)
        second = detector.check(state, tracker)

        assert categories(first) == [EventCategory.NO_PROGRESS]
        assert first[0].payload["items"] == 1
        assert second == []

    def test_completed_item_counts_as_progress(self, clock, state, tracker, make_item):
        tracker.register(make_item("a", last_update=clock()))
        tracker.register(make_item("b", last_update=clock()))
        tracker.transition("a", ItemStage.COMPLETED)
        detector = detector_for(clock, stall=10_000)

        clock.advance(601)

        assert detector.check(state, tracker) == []

    def test_new_phase_visit_rearms(self, clock, state, tracker):
        detector = detector_for(clock, stall=10_000)
        clock.advance(601)
        assert detector.check(state, tracker)

        state.phase_started_at = clock()
        clock.advance(601)

        assert categories(detector.check(state, tracker)) == [EventCategory.NO_PROGRESS]

    def test_reset_forgets_reports(self, clock, state, tracker):
        detector = detector_for(clock, stall=10_000)
        clock.advance(601)
        detector.check(state, tracker)

        detector.reset()

        assert categories(detector.check(state, tracker)) == [EventCategory.NO_PROGRESS]


# =============================================================================
# Suppression and publishing
# =============================================================================


class TestSuppression:
    """Tests for when checks are skipped."""

    def test_awaiting_approval_suppresses_checks(self, clock, state, tracker):
        detector = detector_for(clock)
        state.awaiting_approval = "post-discovery"

        clock.advance(5000)

        assert detector.check(state, tracker) == []

    def test_inactive_workflow_is_ignored(self, clock, state, tracker):
        detector = detector_for(clock)
        state.status = WorkflowStatus.ABORTED

        clock.advance(5000)

        assert detector.check(state, tracker) == []

    def test_both_events_are_published(self, clock, state, tracker, bus, collector):
        detector = detector_for(clock, bus=bus)

        clock.advance(1000)
        detector.check(state, tracker)

        assert collector.categories() == [
            EventCategory.STUCK_STATE_DETECTED,
            EventCategory.NO_PROGRESS,
        ]
        assert all(e.workflow_id == "wf-1" for e in collector.events)
        assert all(e.phase == "discovery" for e in collector.events)

    def test_last_activity_prefers_newest_signal(self, clock, state, tracker, make_item):
        detector = detector_for(clock)
        tracker.register(make_item("a", last_update=clock()))
        clock.advance(120)
        tracker.touch("a")

        assert detector.last_activity(state, tracker) == clock.now
