"""
Built-in event sinks.
"""

import logging
from pathlib import Path

from phasekeeper.models.base import EventCategory
from phasekeeper.models.events import WorkflowEvent
from phasekeeper.utils.fileio import append_line

logger = logging.getLogger(__name__)

# Categories that indicate something needs attention
WARNING_CATEGORIES = frozenset(
    {
        EventCategory.STUCK_STATE_DETECTED,
        EventCategory.NO_PROGRESS,
        EventCategory.GATE_TIMEOUT,
        EventCategory.ITEM_FAILED,
        EventCategory.ITEM_MANUAL_REVIEW,
        EventCategory.WORKFLOW_CANCELLED,
    }
)


class LoggingSink:
    """Forwards events to a logger."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._logger = log or logger

    def __call__(self, event: WorkflowEvent) -> None:
        level = logging.WARNING if event.category in WARNING_CATEGORIES else logging.INFO
        details = ", ".join(f"{k}={v}" for k, v in event.payload.items())
        self._logger.log(
            level,
            f"[{event.workflow_id}] {event.category.value}"
            f"{f' ({event.phase})' if event.phase else ''}"
            f"{f': {details}' if details else ''}",
        )


class JsonlEventSink:
    """Appends events to <state_dir>/<workflow_id>/events.jsonl.

    Attributes:
        state_dir: Root directory holding per-workflow folders
    """

    FILENAME = "events.jsonl"

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir)

    def path_for(self, workflow_id: str) -> Path:
        """Event log path for a workflow."""
        return self.state_dir / workflow_id / self.FILENAME

    def __call__(self, event: WorkflowEvent) -> None:
        path = self.path_for(event.workflow_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        append_line(path, event.model_dump_json())

    def read(self, workflow_id: str) -> list[WorkflowEvent]:
        """Load the logged events of a workflow."""
        path = self.path_for(workflow_id)
        if not path.exists():
            return []
        events = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                events.append(WorkflowEvent.model_validate_json(line))
        return events
