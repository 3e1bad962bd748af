"""
Event and audit record models.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from phasekeeper.models.base import ErrorClass, EventCategory, RecoveryAction, utcnow


class WorkflowEvent(BaseModel):
    """A notification published on the event bus.

    Attributes:
        category: What happened
        workflow_id: Workflow the event concerns
        phase: Phase current at the time, if any
        payload: Category-specific details
        timestamp: When the event was created
    """

    category: EventCategory
    workflow_id: str
    phase: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class AuditEntry(BaseModel):
    """One recovery decision in the append-only audit trail.

    Attributes:
        timestamp: When the decision was made
        workflow_id: Workflow the item belongs to
        item_id: Failed item
        path: Item target path
        phase: Owning phase
        error_class: Classification of the failure
        error_code: Error code, if known
        detail: Failure detail
        action: Retry or manual review
        retry_count: Item retry count after the decision
        delay_seconds: Delay before the retry, 0 for manual review
        risky: Whether the retry repeats a write
    """

    timestamp: datetime = Field(default_factory=utcnow)
    workflow_id: str
    item_id: str
    path: str
    phase: str
    error_class: ErrorClass
    error_code: str | None = None
    detail: str = ""
    action: RecoveryAction
    retry_count: int = 0
    delay_seconds: float = 0.0
    risky: bool = False
