"""
Checkpoint model.

A checkpoint is an immutable, restorable snapshot of a workflow's state and
work items. Its checksum covers the canonical JSON of both so that a
truncated or hand-edited file is detected on load.
"""

import hashlib
import json
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from phasekeeper.models.base import FORMAT_VERSION, CheckpointReason, utcnow
from phasekeeper.models.state import WorkflowState
from phasekeeper.models.work_item import WorkItem


def compute_checksum(state: WorkflowState, items: list[WorkItem]) -> str:
    """SHA-256 over the sorted-key JSON of a state and its items."""
    payload = {
        "state": state.model_dump(mode="json"),
        "items": [item.model_dump(mode="json") for item in items],
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class Checkpoint(BaseModel):
    """An immutable snapshot of workflow state.

    Attributes:
        format_version: Schema version of the record
        checkpoint_id: Identifier, unique within the workflow
        workflow_id: Workflow the snapshot belongs to
        sequence: Monotonic per-workflow counter
        reason: Trigger that produced the checkpoint
        created_at: Creation time
        progress_percentage: Aggregate progress when taken
        state: Snapshot of the workflow state
        items: Snapshot of the work items
        checksum: SHA-256 of state and items
    """

    model_config = ConfigDict(frozen=True)

    format_version: int = FORMAT_VERSION
    checkpoint_id: str
    workflow_id: str
    sequence: int = Field(..., ge=1)
    reason: CheckpointReason
    created_at: datetime = Field(default_factory=utcnow)
    progress_percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    state: WorkflowState
    items: list[WorkItem] = Field(default_factory=list)
    checksum: str = ""

    @classmethod
    def build(
        cls,
        state: WorkflowState,
        items: list[WorkItem],
        sequence: int,
        reason: CheckpointReason,
        progress_percentage: float = 0.0,
        created_at: datetime | None = None,
    ) -> "Checkpoint":
        """Snapshot a state and its items.

        The inputs are deep-copied so later mutation of the live objects
        cannot leak into the checkpoint.
        """
        state_copy = state.model_copy(deep=True)
        items_copy = [item.model_copy(deep=True) for item in items]
        return cls(
            checkpoint_id=f"checkpoint-{sequence:06d}",
            workflow_id=state.workflow_id,
            sequence=sequence,
            reason=reason,
            created_at=created_at or utcnow(),
            progress_percentage=round(progress_percentage, 4),
            state=state_copy,
            items=items_copy,
            checksum=compute_checksum(state_copy, items_copy),
        )

    def integrity_errors(self) -> list[str]:
        """Check version, ownership and checksum.

        State invariants are checked separately by the caller.
        """
        errors: list[str] = []
        if self.format_version > FORMAT_VERSION:
            errors.append(f"unsupported format_version {self.format_version}")
        if self.state.workflow_id != self.workflow_id:
            errors.append("state belongs to a different workflow")
        if self.checksum != compute_checksum(self.state, self.items):
            errors.append("checksum mismatch")
        return errors

    def summary(self) -> dict:
        """Compact description for listings."""
        return {
            "checkpoint_id": self.checkpoint_id,
            "sequence": self.sequence,
            "reason": self.reason.value,
            "phase": self.state.current_phase,
            "progress": self.progress_percentage,
            "created_at": self.created_at.isoformat(),
        }
