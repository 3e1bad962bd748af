"""
Phasekeeper - Data Models

Pydantic models for workflow state, work items, checkpoints, events and
audit entries, plus the shared enumerations.
"""

from phasekeeper.models.base import (
    FORMAT_VERSION,
    MAX_STAGE_WEIGHT,
    STAGE_ORDER,
    STAGE_WEIGHTS,
    CheckpointReason,
    ErrorClass,
    EventCategory,
    GateOutcome,
    ItemStage,
    RecoveryAction,
    WorkflowStatus,
    utcnow,
)
from phasekeeper.models.checkpoint import Checkpoint, compute_checksum
from phasekeeper.models.events import AuditEntry, WorkflowEvent
from phasekeeper.models.state import (
    GateRecord,
    WorkflowRecord,
    WorkflowState,
    new_workflow_id,
)
from phasekeeper.models.work_item import WorkItem

__all__ = [
    # Enums and constants
    "FORMAT_VERSION",
    "MAX_STAGE_WEIGHT",
    "STAGE_ORDER",
    "STAGE_WEIGHTS",
    "CheckpointReason",
    "ErrorClass",
    "EventCategory",
    "GateOutcome",
    "ItemStage",
    "RecoveryAction",
    "WorkflowStatus",
    "utcnow",
    # State
    "GateRecord",
    "WorkflowRecord",
    "WorkflowState",
    "new_workflow_id",
    # Items
    "WorkItem",
    # Checkpoints
    "Checkpoint",
    "compute_checksum",
    # Events
    "AuditEntry",
    "WorkflowEvent",
]
