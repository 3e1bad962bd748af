"""
Workflow Orchestrator.

The controller that owns one workflow at a time and wires the components
together:

- Workflow state machine and approval gates
- Current-state record and checkpoints
- Parallel execution of a phase's work items
- Retry policies and the audit trail
- Stuck-state detection and timer checkpoints while a phase runs
- Event publication to subscribed sinks

It is an ordinary object: create as many as needed, inject configuration,
an event bus and a clock.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from phasekeeper.config.models import GateDefinition, PhasekeeperConfig, WorkflowDefinition
from phasekeeper.events.bus import EventBus
from phasekeeper.events.sinks import JsonlEventSink, LoggingSink
from phasekeeper.models.base import (
    CheckpointReason,
    EventCategory,
    GateOutcome,
    ItemStage,
    WorkflowStatus,
    utcnow,
)
from phasekeeper.models.checkpoint import Checkpoint
from phasekeeper.models.events import AuditEntry, WorkflowEvent
from phasekeeper.models.state import GateRecord, WorkflowState
from phasekeeper.models.work_item import WorkItem
from phasekeeper.orchestrator.checkpoint import CheckpointManager
from phasekeeper.orchestrator.coordinator import (
    ExecutionResult,
    ParallelExecutionCoordinator,
    ResourcePool,
    Worker,
)
from phasekeeper.orchestrator.errors import (
    AlreadyActive,
    CheckpointError,
    CorruptState,
    GateTimeout,
    InvalidConfiguration,
    InvalidTransition,
    ItemNotFound,
    NoActiveWorkflow,
    PhaseIncomplete,
    WorkflowNotFound,
)
from phasekeeper.orchestrator.gates import ApprovalGate
from phasekeeper.orchestrator.monitor import StuckStateDetector
from phasekeeper.orchestrator.progress import ProgressTracker
from phasekeeper.orchestrator.recovery import AuditTrail, RetryHandler
from phasekeeper.orchestrator.state_machine import WorkflowStateMachine
from phasekeeper.orchestrator.store import StateStore
from phasekeeper.utils.timer import PeriodicTask

logger = logging.getLogger(__name__)


class StatusReport(BaseModel):
    """Structured status of a workflow.

    Attributes:
        workflow_id: Workflow identifier
        workflow_type: Workflow type key
        status: Lifecycle status
        current_phase: Phase currently executing
        phase_index: Position of current_phase
        phases: Full phase sequence
        phases_completed: Phases done so far
        awaiting_approval: Gate blocking the next transition, if any
        gates: Latest outcome per gate
        progress_percentage: Weighted progress over all items
        phase_progress_percentage: Weighted progress of the current phase
        stage_counts: Number of items per stage
        outstanding: Items of the current phase that block advancing
        manual_review: Items parked for a human
        last_checkpoint: Id of the most recent checkpoint
        started_at: Start time
        updated_at: Last state change
        last_activity: Last stage change or heartbeat
    """

    workflow_id: str
    workflow_type: str
    status: WorkflowStatus
    current_phase: str
    phase_index: int
    phases: list[str]
    phases_completed: list[str]
    awaiting_approval: str | None = None
    gates: dict[str, GateOutcome] = Field(default_factory=dict)
    progress_percentage: float = 0.0
    phase_progress_percentage: float = 0.0
    stage_counts: dict[str, int] = Field(default_factory=dict)
    outstanding: list[str] = Field(default_factory=list)
    manual_review: list[str] = Field(default_factory=list)
    last_checkpoint: str | None = None
    started_at: datetime
    updated_at: datetime
    last_activity: datetime | None = None


class WorkflowOrchestrator:
    """Drives one workflow through its phases.

    Usage:
        orchestrator = WorkflowOrchestrator(config)
        orchestrator.start("new-project", {"project_name": "demo"})
        result = await orchestrator.run_phase(worker, items)
        await orchestrator.advance_phase()

        # later, possibly in another process
        orchestrator = WorkflowOrchestrator(config)
        orchestrator.resume()
    """

    def __init__(
        self,
        config: PhasekeeperConfig | None = None,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Configuration (defaults apply when omitted)
            bus: Event bus to publish on; a private one is created otherwise
            clock: Time source
        """
        self._config = config or PhasekeeperConfig()
        self._clock = clock
        self._bus = bus or EventBus()
        self._bus.subscribe(LoggingSink())
        self._event_sink: JsonlEventSink | None = None
        if self._config.storage.event_log:
            self._event_sink = JsonlEventSink(self._config.storage.state_dir)
            self._bus.subscribe(self._event_sink)

        self._store = StateStore(self._config.storage.state_dir, self._config.workflows)
        self._pool = ResourcePool(self._config.coordinator.capacity)
        self._tracker = ProgressTracker(clock)
        self._tracker.add_listener(self._on_item_changed)
        self._detector = StuckStateDetector(self._config.monitor, self._bus, clock)

        self._state: WorkflowState | None = None
        self._machine: WorkflowStateMachine | None = None
        self._checkpoints: CheckpointManager | None = None
        self._retry: RetryHandler | None = None
        self._gate: ApprovalGate | None = None
        self._last_checkpoint: Checkpoint | None = None
        self._checkpoint_progress = 0.0
        self._running: set[asyncio.Task] = set()
        self._executing: str | None = None

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> PhasekeeperConfig:
        return self._config

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def tracker(self) -> ProgressTracker:
        return self._tracker

    @property
    def pool(self) -> ResourcePool:
        return self._pool

    @property
    def detector(self) -> StuckStateDetector:
        return self._detector

    @property
    def state(self) -> WorkflowState | None:
        """State of the loaded workflow, if any."""
        return self._state

    @property
    def checkpoints(self) -> CheckpointManager:
        self._require_loaded()
        return self._checkpoints

    @property
    def audit(self) -> AuditTrail:
        self._require_loaded()
        return self._retry.audit

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(
        self,
        workflow_type: str,
        configuration: dict[str, Any] | None = None,
        workflow_id: str | None = None,
    ) -> WorkflowState:
        """Start a new workflow.

        Args:
            workflow_type: Workflow type defined in configuration
            configuration: Options fixed for the workflow's lifetime
            workflow_id: Explicit identifier (generated when omitted)

        Returns:
            The new workflow state

        Raises:
            AlreadyActive: If a workflow is running here or in the store
            InvalidConfiguration: For an unknown type or missing keys
        """
        if self._state is not None and self._state.is_active:
            raise AlreadyActive(self._state.workflow_id)
        existing = self._store.find_active()
        if existing is not None:
            raise AlreadyActive(existing.workflow_id)

        configuration = dict(configuration or {})
        definition = self._definition_for(workflow_type, InvalidConfiguration)
        missing = definition.missing_keys(configuration)
        if missing:
            raise InvalidConfiguration(
                f"Missing required configuration for {workflow_type}: {', '.join(missing)}",
                missing=missing,
            )

        machine = WorkflowStateMachine(definition, self._clock)
        state = machine.new_state(workflow_type, configuration, workflow_id)
        if self._store.exists(state.workflow_id):
            raise AlreadyActive(state.workflow_id)

        self._attach(machine, state, [])
        self._persist()
        self._publish(
            EventCategory.WORKFLOW_STARTED,
            {"workflow_type": workflow_type, "phases": state.phases},
        )
        self._checkpoint(CheckpointReason.WORKFLOW_START)
        logger.info(f"Started {workflow_type} workflow {state.workflow_id}")
        return state

    def load(self, workflow_id: str | None = None) -> WorkflowState:
        """Load a workflow without changing it, e.g. to inspect its status.

        Args:
            workflow_id: Workflow to load; the active (or else most recent)
                workflow when omitted

        Raises:
            WorkflowNotFound: If nothing is persisted for the workflow
            CorruptState: If neither the record nor any checkpoint is valid
        """
        workflow_id = workflow_id or self._default_workflow_id()
        state, items, source = self._read_latest(workflow_id)
        machine = WorkflowStateMachine(
            self._definition_for(state.workflow_type, CorruptState), self._clock
        )
        self._attach(machine, state, items)
        logger.debug(f"Loaded {workflow_id} from {source}")
        return state

    def resume(self, workflow_id: str | None = None) -> WorkflowState:
        """Resume a workflow from its newest valid persisted state.

        The current-state record is used when it is valid and at least as
        new as the latest valid checkpoint; otherwise the checkpoint wins.
        Aborted workflows become active again.

        Raises:
            AlreadyActive: If another workflow is active in this controller
            WorkflowNotFound: If nothing is persisted for the workflow
            CorruptState: If no valid state can be recovered
            InvalidTransition: If the workflow already completed
        """
        if self._state is not None and self._state.is_active:
            raise AlreadyActive(self._state.workflow_id)

        workflow_id = workflow_id or self._default_workflow_id()
        state, items, source = self._read_latest(workflow_id)
        if state.status == WorkflowStatus.COMPLETED:
            raise InvalidTransition(
                f"Workflow {workflow_id} already completed",
                workflow_id=workflow_id,
            )

        machine = WorkflowStateMachine(
            self._definition_for(state.workflow_type, CorruptState), self._clock
        )
        machine.reactivate(state)
        self._attach(machine, state, items)
        self._persist()
        self._publish(
            EventCategory.WORKFLOW_RESUMED,
            {"source": source, "progress_percentage": round(self._tracker.percentage(), 1)},
        )
        logger.info(f"Resumed {workflow_id} at phase '{state.current_phase}' from {source}")
        return state

    def cancel(self) -> WorkflowState:
        """Abort the workflow.

        Running phase executions and gate waits are cancelled at their next
        suspension point. An in-progress checkpoint write finishes first.

        Raises:
            NoActiveWorkflow: If no workflow is active
        """
        state = self._require_active()
        self._machine.abort(state)
        self._gate = None
        self._persist()
        self._publish(EventCategory.WORKFLOW_CANCELLED, {"phase_index": state.phase_index})

        current = _current_task()
        for task in list(self._running):
            if task is not current and not task.done():
                task.cancel()
        logger.info(f"Cancelled workflow {state.workflow_id}")
        return state

    def status(self) -> StatusReport:
        """Structured status of the loaded workflow.

        Raises:
            NoActiveWorkflow: If no workflow is loaded
        """
        state = self._require_loaded()
        phase = state.current_phase
        items = self._tracker.items()
        return StatusReport(
            workflow_id=state.workflow_id,
            workflow_type=state.workflow_type,
            status=state.status,
            current_phase=phase,
            phase_index=state.phase_index,
            phases=list(state.phases),
            phases_completed=list(state.phases_completed),
            awaiting_approval=state.awaiting_approval,
            gates={name: record.outcome for name, record in state.gates.items()},
            progress_percentage=round(self._tracker.percentage(), 2),
            phase_progress_percentage=round(self._tracker.percentage(phase), 2),
            stage_counts={
                stage.value: count for stage, count in self._tracker.stage_counts().items()
            },
            outstanding=self._tracker.outstanding(phase),
            manual_review=[
                i.item_id for i in items if i.stage == ItemStage.MANUAL_REVIEW and not i.waived
            ],
            last_checkpoint=self._last_checkpoint_id(),
            started_at=state.started_at,
            updated_at=state.updated_at,
            last_activity=self._tracker.last_activity(),
        )

    # =========================================================================
    # Phases and gates
    # =========================================================================

    async def advance_phase(
        self,
        wait: bool = True,
        max_prompts: int | None = None,
    ) -> WorkflowState:
        """Complete the current phase and move to the next.

        If an unapproved gate follows the phase it is opened first. With
        wait=True the call blocks until the gate is decided, re-prompting
        after every timeout; with wait=False it returns at once and the
        transition happens when the gate is approved.

        Args:
            wait: Block on the gate instead of returning while it is pending
            max_prompts: Give up with GateTimeout after this many prompts

        Returns:
            The workflow state after the call

        Raises:
            NoActiveWorkflow: If no workflow is active
            PhaseIncomplete: If items of the current phase are unsettled
            GateTimeout: If max_prompts prompts timed out
        """
        state = self._require_active()

        if state.awaiting_approval is None:
            outstanding = self._tracker.outstanding(state.current_phase)
            if outstanding:
                raise PhaseIncomplete(state.current_phase, outstanding)
            gate = self._machine.gate_pending(state)
            if gate is not None:
                self._open_gate(gate)

        if state.awaiting_approval is not None:
            if not wait:
                return state
            with self._tracking_current_task():
                outcome = await self._await_gate(max_prompts)
            if outcome != GateOutcome.APPROVED:
                return state
            if not state.is_active or state.awaiting_approval is not None:
                return state

        self._complete_phase()
        return state

    def resolve_gate(
        self,
        name: str,
        approved: bool,
        notes: str | None = None,
        decided_by: str | None = None,
    ) -> GateRecord:
        """Decide the gate the workflow is waiting on.

        If nobody in this process is blocked on the gate, an approval
        performs the pending phase transition right away.

        Raises:
            NoActiveWorkflow: If no workflow is active
            InvalidTransition: If the workflow is not awaiting this gate
        """
        state = self._require_active()
        if state.awaiting_approval != name:
            raise InvalidTransition(
                f"Workflow is not awaiting approval '{name}'",
                gate=name,
                awaiting=state.awaiting_approval,
            )
        gate = self._current_gate()
        has_waiter = gate.has_waiters
        record = self._machine.resolve_gate(state, gate, approved, notes, decided_by)
        self._publish(
            EventCategory.GATE_RESOLVED,
            {
                "gate": name,
                "outcome": record.outcome.value,
                "decided_by": decided_by,
                "notes": notes,
            },
        )
        if approved and not has_waiter:
            self._complete_phase()
        else:
            self._persist()
        return record

    def approve_gate(
        self, name: str, notes: str | None = None, decided_by: str | None = None
    ) -> GateRecord:
        """Approve the awaited gate."""
        return self.resolve_gate(name, True, notes, decided_by)

    def reject_gate(
        self, name: str, notes: str | None = None, decided_by: str | None = None
    ) -> GateRecord:
        """Reject the awaited gate; the workflow stays in its phase."""
        return self.resolve_gate(name, False, notes, decided_by)

    # =========================================================================
    # Work items
    # =========================================================================

    def add_items(self, items: Iterable[WorkItem]) -> list[WorkItem]:
        """Register work items with the workflow.

        Raises:
            NoActiveWorkflow: If no workflow is active
            InvalidConfiguration: If an item names an unknown phase
            ValueError: If an item id is already tracked
        """
        state = self._require_active()
        added = []
        for item in items:
            if item.owning_phase not in state.phases:
                raise InvalidConfiguration(
                    f"Item {item.item_id} belongs to unknown phase '{item.owning_phase}'"
                )
            if item.resources is None:
                item.resources = dict(self._config.coordinator.default_request)
            added.append(self._tracker.register(item))
        if added:
            self._checkpoint_progress = min(self._checkpoint_progress, self._tracker.percentage())
            self._persist()
            logger.info(f"Added {len(added)} items to {state.workflow_id}")
        return added

    async def run_phase(
        self,
        worker: Worker,
        items: Iterable[WorkItem] | None = None,
    ) -> ExecutionResult:
        """Execute the current phase's items with a worker.

        Stuck-state checks and timer checkpoints run while the phase
        executes.

        Args:
            worker: Coroutine function doing the work for one item
            items: New items to register before running

        Returns:
            Outcome of the execution

        Raises:
            NoActiveWorkflow: If no workflow is active
            InvalidTransition: If the workflow is awaiting approval or a phase is
                already executing
            DependencyCycle: If the phase's items form a cycle
            UnknownDependency: If an item depends on an unknown id
        """
        state = self._require_active()
        if state.awaiting_approval is not None:
            raise InvalidTransition(
                f"Workflow is awaiting approval '{state.awaiting_approval}'",
                gate=state.awaiting_approval,
            )
        if self._executing is not None:
            raise InvalidTransition(
                f"Phase '{self._executing}' is already executing", phase=self._executing
            )
        if items is not None:
            self.add_items(items)

        phase = state.current_phase
        batch = self._tracker.items(phase)
        others = [i for i in self._tracker.items() if i.owning_phase != phase]
        satisfied = [i.item_id for i in others if i.is_settled]
        blocked = [i.item_id for i in others if i.stage == ItemStage.MANUAL_REVIEW and not i.waived]

        coordinator = ParallelExecutionCoordinator(
            pool=self._pool,
            tracker=self._tracker,
            retry_handler=self._retry,
            workflow_id=state.workflow_id,
            bus=self._bus,
            allowed_roots=self._config.coordinator.allowed_roots,
            default_request=self._config.coordinator.default_request,
            on_risky_retry=self._before_risky_retry,
        )

        logger.info(f"Running phase '{phase}' with {len(batch)} items")
        try:
            self._executing = phase
            with self._tracking_current_task():
                async with self.monitoring():
                    result = await coordinator.execute(batch, worker, satisfied, blocked)
        finally:
            self._executing = None
            if self._state is state and state.is_active:
                self._persist()

        logger.info(
            f"Phase '{phase}': {len(result.completed)} completed, "
            f"{len(result.manual_review)} in manual review"
        )
        return result

    def waive_item(self, item_id: str) -> WorkItem:
        """Excuse an item from blocking phase advancement.

        Raises:
            NoActiveWorkflow: If no workflow is active
            ItemNotFound: If the item is not tracked
        """
        self._require_active()
        if item_id not in self._tracker:
            raise ItemNotFound(item_id)
        item = self._tracker.get(item_id)
        item.waived = True
        self._persist()
        logger.info(f"Waived item {item_id} ({item.stage.value})")
        return item

    # =========================================================================
    # Checkpoints
    # =========================================================================

    def create_checkpoint(self, reason: CheckpointReason = CheckpointReason.MANUAL) -> Checkpoint:
        """Take a checkpoint now.

        Raises:
            NoActiveWorkflow: If no workflow is loaded
            CheckpointError: If the write failed
        """
        self._require_loaded()
        return self._checkpoint(reason)

    def list_checkpoints(self) -> list[Checkpoint]:
        """Valid checkpoints of the loaded workflow, oldest first."""
        return self.checkpoints.list_checkpoints()

    def restore_checkpoint(self, checkpoint_id: str) -> WorkflowState:
        """Replace the in-memory state with a checkpoint.

        Other checkpoints are not touched.

        Raises:
            NoActiveWorkflow: If no workflow is loaded
            CheckpointError: If the checkpoint is missing or invalid
            CorruptState: If its state fails validation
            InvalidTransition: While a phase is executing
        """
        self._require_loaded()
        return self._restore(self._checkpoints.load(checkpoint_id))

    def rollback(self, phase: str) -> WorkflowState:
        """Restore the latest checkpoint taken while a phase was current.

        Raises:
            InvalidTransition: If the phase is not part of the workflow
            CheckpointError: If no checkpoint exists for the phase
        """
        state = self._require_loaded()
        if phase not in state.phases:
            raise InvalidTransition(f"Unknown phase '{phase}'", phase=phase)
        checkpoint = self._checkpoints.latest_in_phase(phase)
        if checkpoint is None:
            raise CheckpointError(f"No checkpoint was taken in phase '{phase}'", phase=phase)
        return self._restore(checkpoint)

    # =========================================================================
    # Monitoring
    # =========================================================================

    @asynccontextmanager
    async def monitoring(self) -> AsyncIterator[list[PeriodicTask]]:
        """Run stuck-state checks and timer checkpoints for the block."""
        tasks = [
            PeriodicTask(
                "timer-checkpoint",
                self._config.checkpoints.interval_minutes * 60.0,
                self._timer_checkpoint,
            )
        ]
        if self._config.monitor.enabled:
            tasks.append(
                PeriodicTask(
                    "stuck-check",
                    self._config.monitor.check_interval_seconds,
                    self.check_liveness,
                )
            )
        for task in tasks:
            task.start()
        try:
            yield tasks
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                await task.stop()

    def check_liveness(self) -> list[WorkflowEvent]:
        """Run one stuck-state check now."""
        if self._state is None:
            return []
        return self._detector.check(self._state, self._tracker)

    def audit_entries(self, item_id: str | None = None) -> list[AuditEntry]:
        """Recovery decisions recorded for the workflow."""
        return self.audit.entries(item_id)

    # =========================================================================
    # Internals
    # =========================================================================

    def _definition_for(
        self, workflow_type: str, error: type[InvalidConfiguration] | type[CorruptState]
    ) -> WorkflowDefinition:
        definition = self._config.get_workflow(workflow_type)
        if definition is None:
            raise error(f"Unknown workflow type '{workflow_type}'")
        return definition

    def _default_workflow_id(self) -> str:
        active = self._store.find_active()
        if active is not None:
            return active.workflow_id
        workflows = self._store.list_workflows()
        if not workflows:
            raise NoActiveWorkflow("No workflows found")
        return workflows[-1].workflow_id

    def _read_latest(self, workflow_id: str) -> tuple[WorkflowState, list[WorkItem], str]:
        """Newest valid state among the current record and the checkpoints."""
        candidates: list[tuple[datetime, WorkflowState, list[WorkItem], str]] = []
        errors: list[CorruptState] = []

        record = None
        try:
            record = self._store.load(workflow_id)
        except WorkflowNotFound:
            pass
        except CorruptState as e:
            logger.warning(f"Current record of {workflow_id} unusable: {e}")
            errors.append(e)
        if record is not None:
            candidates.append((record.saved_at, record.state, record.items, "record"))

        manager = CheckpointManager(
            self._store.checkpoint_dir(workflow_id),
            workflow_id,
            self._config.checkpoints.retention,
            self._clock,
        )
        checkpoint = manager.latest_valid()
        if checkpoint is not None:
            candidates.append(
                (
                    checkpoint.created_at,
                    checkpoint.state.model_copy(deep=True),
                    [item.model_copy(deep=True) for item in checkpoint.items],
                    checkpoint.checkpoint_id,
                )
            )

        if not candidates and not errors:
            raise WorkflowNotFound(workflow_id)

        # Stable sort keeps the record ahead of a checkpoint with the same time
        candidates.sort(key=lambda c: c[0], reverse=True)
        for _, state, items, source in candidates:
            candidate = state.model_copy(deep=True)
            if candidate.current_phase in candidate.phases:
                candidate.phase_index = candidate.phases.index(candidate.current_phase)
            problems = candidate.invariant_errors()
            if problems:
                logger.warning(f"{source} of {workflow_id} is inconsistent: {problems}")
                errors.append(CorruptState(f"{source} of {workflow_id} is inconsistent", problems))
                continue
            return candidate, items, source

        raise errors[0]

    def _attach(
        self,
        machine: WorkflowStateMachine,
        state: WorkflowState,
        items: list[WorkItem],
    ) -> None:
        machine.rederive(state)
        self._machine = machine
        self._state = state
        self._tracker.load(items)
        self._checkpoints = CheckpointManager(
            self._store.checkpoint_dir(state.workflow_id),
            state.workflow_id,
            self._config.checkpoints.retention,
            self._clock,
        )
        self._retry = RetryHandler(
            self._config.retry,
            AuditTrail.load(self._store.audit_path(state.workflow_id)),
            self._clock,
        )
        self._gate = None
        self._last_checkpoint = None
        self._checkpoint_progress = self._tracker.percentage()
        self._detector.reset()

    def _require_loaded(self) -> WorkflowState:
        if self._state is None:
            raise NoActiveWorkflow("No workflow is loaded")
        return self._state

    def _require_active(self) -> WorkflowState:
        state = self._require_loaded()
        if not state.is_active:
            raise NoActiveWorkflow(
                f"Workflow {state.workflow_id} is {state.status.value}",
                workflow_id=state.workflow_id,
            )
        return state

    def _persist(self) -> None:
        self._store.save(self._state, self._tracker.snapshot(), saved_at=self._clock())

    def _publish(self, category: EventCategory, payload: dict[str, Any]) -> None:
        state = self._state
        self._bus.publish(
            WorkflowEvent(
                category=category,
                workflow_id=state.workflow_id,
                phase=state.current_phase,
                payload=payload,
                timestamp=self._clock(),
            )
        )

    def _open_gate(self, definition: GateDefinition) -> ApprovalGate:
        record = self._machine.open_gate(self._state, definition)
        self._gate = ApprovalGate(definition, record, self._clock)
        self._persist()
        self._publish(
            EventCategory.GATE_OPENED,
            {
                "gate": definition.name,
                "after_phase": definition.after,
                "timeout_seconds": definition.timeout_seconds,
            },
        )
        return self._gate

    def _current_gate(self) -> ApprovalGate:
        state = self._state
        record = state.gates[state.awaiting_approval]
        if self._gate is None or self._gate.record is not record:
            definition = self._machine.definition.get_gate(record.name)
            if definition is None:
                raise CorruptState(f"Awaited gate '{record.name}' is not defined")
            self._gate = ApprovalGate(definition, record, self._clock)
        return self._gate

    async def _await_gate(self, max_prompts: int | None) -> GateOutcome:
        gate = self._current_gate()
        while True:
            outcome = await gate.wait()
            if outcome != GateOutcome.TIMED_OUT:
                return outcome
            self._persist()
            self._publish(
                EventCategory.GATE_TIMEOUT,
                {
                    "gate": gate.name,
                    "prompts": gate.record.prompts,
                    "timeout_seconds": gate.definition.timeout_seconds,
                },
            )
            if max_prompts is not None and gate.record.prompts >= max_prompts:
                raise GateTimeout(gate.name, gate.record.prompts)

    def _complete_phase(self) -> None:
        state = self._state
        previous = state.current_phase
        next_phase = self._machine.complete_phase(state)
        self._gate = None
        self._persist()
        self._publish(EventCategory.PHASE_TRANSITION, {"from": previous, "to": next_phase})
        self._checkpoint(CheckpointReason.PHASE_COMPLETE)
        if next_phase is None:
            self._publish(EventCategory.WORKFLOW_COMPLETED, {"phases": state.phases_completed})

    def _restore(self, checkpoint: Checkpoint) -> WorkflowState:
        if any(not task.done() for task in self._running):
            raise InvalidTransition("Cannot restore while a phase is executing")

        state = checkpoint.state.model_copy(deep=True)
        items = [item.model_copy(deep=True) for item in checkpoint.items]
        self._machine.rederive(state)
        if state.status == WorkflowStatus.ABORTED:
            self._machine.reactivate(state)
        state.updated_at = self._clock()

        self._state = state
        self._tracker.load(items)
        self._gate = None
        self._last_checkpoint = checkpoint
        self._checkpoint_progress = self._tracker.percentage()
        self._detector.reset()
        self._persist()
        self._publish(
            EventCategory.CHECKPOINT_RESTORED,
            {"checkpoint_id": checkpoint.checkpoint_id, "sequence": checkpoint.sequence},
        )
        logger.info(
            f"Restored {checkpoint.checkpoint_id} of {state.workflow_id} "
            f"(phase '{state.current_phase}')"
        )
        return state

    def _checkpoint(self, reason: CheckpointReason) -> Checkpoint:
        self._persist()
        checkpoint = self._checkpoints.create(
            self._state, self._tracker.snapshot(), reason, self._tracker.percentage()
        )
        self._checkpoint_taken(checkpoint)
        return checkpoint

    async def _checkpoint_async(self, reason: CheckpointReason) -> Checkpoint | None:
        self._persist()
        try:
            checkpoint = await self._checkpoints.create_async(
                self._state, self._tracker.snapshot(), reason, self._tracker.percentage()
            )
        except CheckpointError as e:
            logger.error(f"{reason.value} checkpoint failed: {e}")
            return None
        self._checkpoint_taken(checkpoint)
        return checkpoint

    def _checkpoint_taken(self, checkpoint: Checkpoint) -> None:
        self._last_checkpoint = checkpoint
        self._checkpoint_progress = checkpoint.progress_percentage
        self._publish(EventCategory.CHECKPOINT_CREATED, checkpoint.summary())

    def _last_checkpoint_id(self) -> str | None:
        if self._last_checkpoint is not None:
            return self._last_checkpoint.checkpoint_id
        latest = self._checkpoints.latest_valid() if self._checkpoints else None
        return latest.checkpoint_id if latest else None

    async def _timer_checkpoint(self) -> None:
        if self._state is not None and self._state.is_active:
            await self._checkpoint_async(CheckpointReason.TIMER)

    async def _before_risky_retry(self, item: WorkItem) -> None:
        logger.info(f"Retry of {item.item_id} repeats a write; checkpointing first")
        await self._checkpoint_async(CheckpointReason.PRE_RISKY_OP)

    def _on_item_changed(self, item: WorkItem, previous: ItemStage) -> None:
        """Progress listener: progress-step checkpoints and record updates."""
        state = self._state
        if state is None or not state.is_active:
            return
        progress = self._tracker.percentage()
        if progress - self._checkpoint_progress >= self._config.checkpoints.progress_step:
            try:
                self._checkpoint(CheckpointReason.PROGRESS_INTERVAL)
            except CheckpointError as e:
                logger.error(f"Progress checkpoint failed: {e}")
        elif item.stage.is_terminal:
            self._persist()

    @contextmanager
    def _tracking_current_task(self) -> Iterator[None]:
        """Register the running task so cancel() can interrupt it."""
        task = _current_task()
        if task is not None:
            self._running.add(task)
        try:
            yield
        finally:
            if task is not None:
                self._running.discard(task)


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
