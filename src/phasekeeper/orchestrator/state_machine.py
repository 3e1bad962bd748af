"""
Workflow State Machine.

Pure transitions over WorkflowState. One state per phase of the workflow's
fixed sequence, plus the terminal completed and aborted statuses. Phases only
move forward here; going back happens solely by restoring a checkpoint.

Every transition leaves the state satisfying WorkflowState.invariant_errors()
and bumps updated_at. Persistence, events and gate waiting live in the
orchestrator.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from phasekeeper.config.models import GateDefinition, WorkflowDefinition
from phasekeeper.models.base import GateOutcome, WorkflowStatus, utcnow
from phasekeeper.models.state import GateRecord, WorkflowState, new_workflow_id
from phasekeeper.orchestrator.errors import CorruptState, InvalidTransition
from phasekeeper.orchestrator.gates import ApprovalGate

logger = logging.getLogger(__name__)


class WorkflowStateMachine:
    """Applies phase and gate transitions to a workflow state.

    Usage:
        machine = WorkflowStateMachine(config.get_workflow("new-project"))
        state = machine.new_state("new-project", {"project_name": "demo"})
        machine.complete_phase(state)
    """

    def __init__(
        self,
        definition: WorkflowDefinition,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._definition = definition
        self._clock = clock

    @property
    def definition(self) -> WorkflowDefinition:
        return self._definition

    def new_state(
        self,
        workflow_type: str,
        configuration: dict[str, Any],
        workflow_id: str | None = None,
    ) -> WorkflowState:
        """Create the state of a freshly started workflow."""
        now = self._clock()
        phases = list(self._definition.phases)
        return WorkflowState(
            workflow_id=workflow_id or new_workflow_id(now),
            workflow_type=workflow_type,
            phases=phases,
            current_phase=phases[0],
            phase_index=0,
            configuration=dict(configuration),
            started_at=now,
            updated_at=now,
            phase_started_at=now,
        )

    def complete_phase(self, state: WorkflowState) -> str | None:
        """Mark the current phase done and move to the next one.

        Returns:
            The new current phase, or None when the workflow completed

        Raises:
            InvalidTransition: If the workflow is not active or is waiting
                on a gate
        """
        self._require_active(state)
        if state.awaiting_approval is not None:
            raise InvalidTransition(
                f"Workflow is awaiting approval '{state.awaiting_approval}'",
                gate=state.awaiting_approval,
            )

        now = self._clock()
        finished = state.current_phase
        state.phases_completed.append(finished)
        state.updated_at = now

        if state.phase_index + 1 >= len(state.phases):
            state.status = WorkflowStatus.COMPLETED
            state.completed_at = now
            logger.info(f"Workflow {state.workflow_id} completed after '{finished}'")
            return None

        state.phase_index += 1
        state.current_phase = state.phases[state.phase_index]
        state.phase_started_at = now
        logger.info(f"Workflow {state.workflow_id}: {finished} -> {state.current_phase}")
        return state.current_phase

    def gate_pending(self, state: WorkflowState) -> GateDefinition | None:
        """The gate after the current phase, unless it was already approved."""
        gate = self._definition.gate_after(state.current_phase)
        if gate is None:
            return None
        record = state.gates.get(gate.name)
        if record is not None and record.outcome == GateOutcome.APPROVED:
            return None
        return gate

    def open_gate(self, state: WorkflowState, gate: GateDefinition) -> GateRecord:
        """Block the workflow on a gate.

        Reopening a gate that is already awaited returns its record as is.

        Raises:
            InvalidTransition: If the gate does not follow the current phase
        """
        self._require_active(state)
        if gate.after != state.current_phase:
            raise InvalidTransition(
                f"Gate '{gate.name}' follows '{gate.after}', not '{state.current_phase}'",
                gate=gate.name,
            )
        if state.awaiting_approval == gate.name:
            return state.gates[gate.name]

        record = state.gates.get(gate.name) or GateRecord(name=gate.name, after_phase=gate.after)
        record.outcome = GateOutcome.PENDING
        record.resolved_at = None
        record.notes = None
        record.decided_by = None
        state.gates[gate.name] = record
        state.awaiting_approval = gate.name
        state.updated_at = self._clock()
        return record

    def resolve_gate(
        self,
        state: WorkflowState,
        gate: ApprovalGate,
        approved: bool,
        notes: str | None = None,
        decided_by: str | None = None,
    ) -> GateRecord:
        """Record a decision on the awaited gate and unblock the workflow.

        A rejection leaves the workflow in its current phase.

        Raises:
            InvalidTransition: If the workflow is not awaiting this gate
        """
        if state.awaiting_approval != gate.name:
            raise InvalidTransition(
                f"Workflow is not awaiting approval '{gate.name}'",
                gate=gate.name,
                awaiting=state.awaiting_approval,
            )
        record = gate.resolve(approved, notes=notes, decided_by=decided_by)
        state.gates[gate.name] = record
        state.awaiting_approval = None
        state.updated_at = self._clock()
        return record

    def abort(self, state: WorkflowState) -> None:
        """Move the workflow to aborted.

        Raises:
            InvalidTransition: If the workflow already completed
        """
        if state.status == WorkflowStatus.COMPLETED:
            raise InvalidTransition(f"Workflow {state.workflow_id} already completed")
        now = self._clock()
        state.status = WorkflowStatus.ABORTED
        state.completed_at = now
        state.updated_at = now

    def reactivate(self, state: WorkflowState) -> None:
        """Make an aborted workflow active again.

        Raises:
            InvalidTransition: If the workflow completed
        """
        if state.status == WorkflowStatus.COMPLETED:
            raise InvalidTransition(f"Workflow {state.workflow_id} already completed")
        if state.status == WorkflowStatus.ABORTED:
            state.status = WorkflowStatus.ACTIVE
            state.completed_at = None
            state.updated_at = self._clock()

    def rederive(self, state: WorkflowState) -> WorkflowState:
        """Recompute phase_index from current_phase and validate.

        Raises:
            CorruptState: If any invariant fails afterwards
        """
        if state.current_phase in state.phases:
            state.phase_index = state.phases.index(state.current_phase)
        errors = state.invariant_errors()
        if errors:
            raise CorruptState(f"Workflow {state.workflow_id} is inconsistent", errors)
        return state

    def _require_active(self, state: WorkflowState) -> None:
        if not state.is_active:
            raise InvalidTransition(
                f"Workflow {state.workflow_id} is {state.status.value}",
                status=state.status.value,
            )
