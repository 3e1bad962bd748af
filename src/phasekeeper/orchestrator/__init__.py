"""
Phasekeeper - Orchestrator Module

This module drives workflows through their phases:

- WorkflowOrchestrator: Controller owning one workflow at a time
- WorkflowStateMachine: Forward-only phase and gate transitions
- CheckpointManager / StateStore: Durable state and restorable snapshots
- StuckStateDetector: Stall and no-progress detection
- ParallelExecutionCoordinator: Conflict-free waves under a ResourcePool
- RetryHandler: Failure classification, retries and the audit trail
- ProgressTracker: Weighted per-item progress

Key Workflow:
1. start() a workflow of a configured type
2. run_phase() the current phase's items with a worker
3. advance_phase(), passing any approval gate
4. resume() after a crash or restart

Usage:
    from phasekeeper.orchestrator import WorkflowOrchestrator

    orchestrator = WorkflowOrchestrator(config)
    orchestrator.start("new-project", {"project_name": "demo"})
    await orchestrator.run_phase(worker, items)
    await orchestrator.advance_phase()
"""

from phasekeeper.orchestrator.checkpoint import CheckpointManager
from phasekeeper.orchestrator.coordinator import (
    ExecutionResult,
    ItemReporter,
    ParallelExecutionCoordinator,
    ReportKind,
    ResourcePool,
    ResourceRequestTooLarge,
    WorkerReport,
    compute_waves,
    find_cycle,
)
from phasekeeper.orchestrator.errors import (
    AlreadyActive,
    CheckpointError,
    CorruptState,
    DependencyCycle,
    GateTimeout,
    InvalidConfiguration,
    InvalidPath,
    InvalidTransition,
    ItemNotFound,
    NoActiveWorkflow,
    PhaseIncomplete,
    StageRegression,
    UnknownDependency,
    WorkflowError,
    WorkflowNotFound,
)
from phasekeeper.orchestrator.gates import ApprovalGate
from phasekeeper.orchestrator.monitor import StuckStateDetector
from phasekeeper.orchestrator.orchestrator import StatusReport, WorkflowOrchestrator
from phasekeeper.orchestrator.paths import check_path, normalize_path
from phasekeeper.orchestrator.progress import ProgressTracker, is_legal_transition
from phasekeeper.orchestrator.recovery import (
    AuditTrail,
    RecoveryDecision,
    RetryHandler,
    classify,
    error_code_for,
)
from phasekeeper.orchestrator.state_machine import WorkflowStateMachine
from phasekeeper.orchestrator.store import StateStore

__all__ = [
    # Main orchestrator
    "WorkflowOrchestrator",
    "StatusReport",
    # State machine and gates
    "WorkflowStateMachine",
    "ApprovalGate",
    # Persistence
    "CheckpointManager",
    "StateStore",
    # Monitoring
    "StuckStateDetector",
    # Execution
    "ExecutionResult",
    "ItemReporter",
    "ParallelExecutionCoordinator",
    "ReportKind",
    "ResourcePool",
    "ResourceRequestTooLarge",
    "WorkerReport",
    "compute_waves",
    "find_cycle",
    "check_path",
    "normalize_path",
    # Recovery
    "AuditTrail",
    "RecoveryDecision",
    "RetryHandler",
    "classify",
    "error_code_for",
    # Progress
    "ProgressTracker",
    "is_legal_transition",
    # Errors
    "AlreadyActive",
    "CheckpointError",
    "CorruptState",
    "DependencyCycle",
    "GateTimeout",
    "InvalidConfiguration",
    "InvalidPath",
    "InvalidTransition",
    "ItemNotFound",
    "NoActiveWorkflow",
    "PhaseIncomplete",
    "StageRegression",
    "UnknownDependency",
    "WorkflowError",
    "WorkflowNotFound",
]
