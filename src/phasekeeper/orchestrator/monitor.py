"""
Stuck-State Detector.

A periodic liveness check over the running phase. It only reads state and
publishes advisory events; it never changes the workflow.

- StuckStateDetected: nothing happened (no state update, stage change or
  heartbeat) for longer than the stall threshold. Reported once per stall
  episode; new activity re-arms it.
- NoProgress: the phase has run past the grace period without a single
  completed item. Reported once per phase visit.

Both are suppressed while the workflow waits on an approval gate.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from phasekeeper.config.models import MonitorConfig
from phasekeeper.events.bus import EventBus
from phasekeeper.models.base import EventCategory, utcnow
from phasekeeper.models.events import WorkflowEvent
from phasekeeper.models.state import WorkflowState
from phasekeeper.orchestrator.progress import ProgressTracker

logger = logging.getLogger(__name__)


class StuckStateDetector:
    """Detects stalled phases.

    Usage:
        detector = StuckStateDetector(MonitorConfig(), bus)
        task = PeriodicTask("stuck-check", 300, lambda: detector.check(state, tracker))
    """

    def __init__(
        self,
        config: MonitorConfig | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config or MonitorConfig()
        self._bus = bus
        self._clock = clock
        # Last-activity timestamp of the stall already reported
        self._reported_stall: dict[str, datetime] = {}
        self._reported_no_progress: set[tuple[str, str, datetime]] = set()

    @property
    def config(self) -> MonitorConfig:
        return self._config

    def last_activity(self, state: WorkflowState, tracker: ProgressTracker) -> datetime:
        """Most recent sign of life in the current phase."""
        candidates = [state.updated_at, state.phase_started_at]
        tracked = tracker.last_activity(state.current_phase)
        if tracked is not None:
            candidates.append(tracked)
        candidates.extend(item.last_update for item in tracker.items(state.current_phase))
        return max(candidates)

    def check(self, state: WorkflowState, tracker: ProgressTracker) -> list[WorkflowEvent]:
        """Run one liveness check.

        Args:
            state: Workflow state (read only)
            tracker: Progress tracker of the workflow

        Returns:
            Events published by this check
        """
        if not state.is_active or state.awaiting_approval is not None:
            return []

        now = self._clock()
        phase = state.current_phase
        events: list[WorkflowEvent] = []

        last = self.last_activity(state, tracker)
        idle = (now - last).total_seconds()
        if idle >= self._config.stall_threshold_seconds:
            if self._reported_stall.get(state.workflow_id) != last:
                self._reported_stall[state.workflow_id] = last
                events.append(
                    self._event(
                        EventCategory.STUCK_STATE_DETECTED,
                        state,
                        {
                            "elapsed_seconds": round(idle, 1),
                            "threshold_seconds": self._config.stall_threshold_seconds,
                            "progress_percentage": round(tracker.percentage(phase), 1),
                            "last_activity": last.isoformat(),
                        },
                    )
                )
        else:
            self._reported_stall.pop(state.workflow_id, None)

        in_phase = (now - state.phase_started_at).total_seconds()
        phase_key = (state.workflow_id, phase, state.phase_started_at)
        if (
            in_phase >= self._config.no_progress_grace_seconds
            and tracker.completed_count(phase) == 0
            and phase_key not in self._reported_no_progress
        ):
            self._reported_no_progress.add(phase_key)
            events.append(
                self._event(
                    EventCategory.NO_PROGRESS,
                    state,
                    {
                        "elapsed_seconds": round(in_phase, 1),
                        "grace_seconds": self._config.no_progress_grace_seconds,
                        "items": len(tracker.items(phase)),
                    },
                )
            )

        for event in events:
            logger.warning(f"{event.category.value} in {state.workflow_id} ({phase})")
            if self._bus is not None:
                self._bus.publish(event)
        return events

    def reset(self) -> None:
        """Forget reported episodes, e.g. after a restore."""
        self._reported_stall.clear()
        self._reported_no_progress.clear()

    def _event(
        self, category: EventCategory, state: WorkflowState, payload: dict
    ) -> WorkflowEvent:
        return WorkflowEvent(
            category=category,
            workflow_id=state.workflow_id,
            phase=state.current_phase,
            payload=payload,
            timestamp=self._clock(),
        )
