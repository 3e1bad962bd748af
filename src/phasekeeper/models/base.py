"""
Base enumerations and helpers shared by all models.
"""

from datetime import UTC, datetime
from enum import Enum

# Bumped whenever a persisted record changes shape
FORMAT_VERSION = 1


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(UTC)


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ABORTED = "aborted"


class ItemStage(str, Enum):
    """Stage of a work item.

    Active stages run strictly forward from QUEUED to COMPLETED. FAILED is
    reachable from any active stage and leads either back to QUEUED (a new
    attempt) or to MANUAL_REVIEW.
    """

    QUEUED = "queued"
    VALIDATING = "validating"
    CREATING = "creating"
    WRITING = "writing"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    MANUAL_REVIEW = "manual-review"

    @property
    def is_terminal(self) -> bool:
        """Whether no further work happens without human action."""
        return self in (ItemStage.COMPLETED, ItemStage.MANUAL_REVIEW)

    @property
    def weight(self) -> int | None:
        """Progress weight, or None for stages outside the forward path."""
        return STAGE_WEIGHTS.get(self)


# Forward path of an attempt, in order
STAGE_ORDER: tuple[ItemStage, ...] = (
    ItemStage.QUEUED,
    ItemStage.VALIDATING,
    ItemStage.CREATING,
    ItemStage.WRITING,
    ItemStage.VERIFYING,
    ItemStage.COMPLETED,
)

STAGE_WEIGHTS: dict[ItemStage, int] = {stage: i for i, stage in enumerate(STAGE_ORDER)}

MAX_STAGE_WEIGHT = STAGE_WEIGHTS[ItemStage.COMPLETED]


class ErrorClass(str, Enum):
    """Failure classification driving the retry policy."""

    TRANSIENT = "transient"
    PERMISSION = "permission"
    PERMANENT = "permanent"


class RecoveryAction(str, Enum):
    """What the recovery handler decided for a failure."""

    RETRY = "retry"
    MANUAL_REVIEW = "manual-review"


class CheckpointReason(str, Enum):
    """Why a checkpoint was taken."""

    WORKFLOW_START = "workflow-start"
    PHASE_COMPLETE = "phase-complete"
    PROGRESS_INTERVAL = "progress-interval"
    TIMER = "timer"
    PRE_RISKY_OP = "pre-risky-op"
    MANUAL = "manual"


class GateOutcome(str, Enum):
    """Outcome of an approval gate prompt."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed-out"


class EventCategory(str, Enum):
    """Categories of events published on the event bus."""

    WORKFLOW_STARTED = "workflow-started"
    WORKFLOW_RESUMED = "workflow-resumed"
    WORKFLOW_COMPLETED = "workflow-completed"
    WORKFLOW_CANCELLED = "workflow-cancelled"
    PHASE_TRANSITION = "phase-transition"
    STUCK_STATE_DETECTED = "stuck-state-detected"
    NO_PROGRESS = "no-progress"
    GATE_OPENED = "gate-opened"
    GATE_RESOLVED = "gate-resolved"
    GATE_TIMEOUT = "gate-timeout"
    ITEM_FAILED = "item-failed"
    ITEM_MANUAL_REVIEW = "item-manual-review"
    CHECKPOINT_CREATED = "checkpoint-created"
    CHECKPOINT_RESTORED = "checkpoint-restored"
