"""
Workflow state models.

WorkflowState is the single source of truth for one workflow's position in
its phase sequence. WorkflowRecord is what gets persisted as the current
state record: the state plus a snapshot of the workflow's work items.
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from phasekeeper.models.base import (
    FORMAT_VERSION,
    GateOutcome,
    WorkflowStatus,
    utcnow,
)
from phasekeeper.models.work_item import WorkItem


def new_workflow_id(now: datetime | None = None) -> str:
    """Generate an opaque workflow identifier."""
    now = now or utcnow()
    return f"workflow-{now:%Y-%m-%d}-{uuid.uuid4().hex[:8]}"


class GateRecord(BaseModel):
    """Persisted state of one approval gate.

    Attributes:
        name: Gate name
        after_phase: Phase the gate follows
        outcome: Latest outcome
        requested_at: When the gate was last opened or re-prompted
        resolved_at: When it was approved or rejected
        prompts: Number of prompts issued so far
        notes: Notes supplied with the decision
        decided_by: Who made the decision
    """

    name: str
    after_phase: str
    outcome: GateOutcome = GateOutcome.PENDING
    requested_at: datetime | None = None
    resolved_at: datetime | None = None
    prompts: int = Field(default=0, ge=0)
    notes: str | None = None
    decided_by: str | None = None


class WorkflowState(BaseModel):
    """State of one workflow.

    Attributes:
        format_version: Schema version of the record
        workflow_id: Opaque workflow identifier
        workflow_type: Workflow type key (e.g. "new-project")
        status: Lifecycle status
        phases: Ordered phase sequence fixed at start
        current_phase: Phase currently executing
        phase_index: Index of current_phase in phases
        phases_completed: Phases completed so far, in order
        configuration: Options fixed at start
        awaiting_approval: Gate currently blocking the transition, if any
        gates: Gate records keyed by gate name
        started_at: When the workflow started
        updated_at: Last mutation time
        phase_started_at: When current_phase was entered
        completed_at: When the workflow finished or was aborted
    """

    format_version: int = FORMAT_VERSION
    workflow_id: str
    workflow_type: str
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    phases: list[str]
    current_phase: str
    phase_index: int = Field(default=0, ge=0)
    phases_completed: list[str] = Field(default_factory=list)
    configuration: dict[str, Any] = Field(default_factory=dict)
    awaiting_approval: str | None = None
    gates: dict[str, GateRecord] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    phase_started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        """Whether the workflow is still running."""
        return self.status == WorkflowStatus.ACTIVE

    @property
    def next_phase(self) -> str | None:
        """Phase after current_phase, or None on the last phase."""
        if self.phase_index + 1 < len(self.phases):
            return self.phases[self.phase_index + 1]
        return None

    def invariant_errors(self) -> list[str]:
        """Check the structural invariants of the state.

        Returns:
            Human-readable violations; empty when the state is consistent
        """
        errors: list[str] = []
        if not self.phases:
            return ["phase sequence is empty"]

        if self.current_phase not in self.phases:
            errors.append(f"current_phase '{self.current_phase}' is not in the phase sequence")
        elif self.phases.index(self.current_phase) != self.phase_index:
            errors.append(
                f"phase_index {self.phase_index} does not match current_phase "
                f"'{self.current_phase}' (index {self.phases.index(self.current_phase)})"
            )

        done = len(self.phases_completed)
        if self.phases_completed != self.phases[:done]:
            errors.append("phases_completed is not a prefix of the phase sequence")

        if self.status == WorkflowStatus.ACTIVE and done != self.phase_index:
            errors.append(
                f"active workflow at phase_index {self.phase_index} "
                f"has {done} completed phases"
            )
        elif self.status == WorkflowStatus.COMPLETED and done != len(self.phases):
            errors.append("completed workflow has unfinished phases")
        elif self.status == WorkflowStatus.ABORTED and done > self.phase_index + 1:
            errors.append("aborted workflow has completed phases beyond its position")

        if self.awaiting_approval is not None:
            gate = self.gates.get(self.awaiting_approval)
            if gate is None:
                errors.append(f"awaiting unknown gate '{self.awaiting_approval}'")
            elif gate.after_phase != self.current_phase:
                errors.append(
                    f"gate '{gate.name}' follows '{gate.after_phase}', "
                    f"not current phase '{self.current_phase}'"
                )

        return errors


class WorkflowRecord(BaseModel):
    """Current state record persisted for a workflow.

    Attributes:
        format_version: Schema version of the record
        saved_at: When the record was written
        state: Workflow state
        items: Snapshot of the workflow's work items
    """

    format_version: int = FORMAT_VERSION
    saved_at: datetime = Field(default_factory=utcnow)
    state: WorkflowState
    items: list[WorkItem] = Field(default_factory=list)
