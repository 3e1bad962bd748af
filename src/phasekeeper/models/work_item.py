"""
Work item model.

A work item is one unit of output (a document, a task artifact) produced by
a worker during a phase.
"""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from phasekeeper.models.base import ErrorClass, ItemStage, utcnow


class WorkItem(BaseModel):
    """A unit of work owned by a phase.

    Attributes:
        item_id: Unique identifier; dependencies reference it
        path: Target output path, relative to an allowed destination root
        owning_phase: Phase the item belongs to
        stage: Current stage
        high_water_stage: Furthest forward stage ever reached
        retry_count: Retries consumed so far
        last_error_class: Class of the most recent failure
        last_error: Detail of the most recent failure
        depends_on: Item ids that must complete first
        resources: Resource units consumed while in flight
        waived: Explicitly excused from blocking phase advancement
        wrote_output: The item reached the writing stage at least once
        last_update: Time of the last stage change or heartbeat
    """

    item_id: str
    path: str
    owning_phase: str
    stage: ItemStage = ItemStage.QUEUED
    high_water_stage: ItemStage = ItemStage.QUEUED
    retry_count: int = Field(default=0, ge=0)
    last_error_class: ErrorClass | None = None
    last_error: str | None = None
    depends_on: list[str] = Field(default_factory=list)
    resources: dict[str, int] | None = None
    waived: bool = False
    wrote_output: bool = False
    last_update: datetime = Field(default_factory=utcnow)

    @field_validator("item_id", "owning_phase")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        """Identifiers cannot be blank."""
        if not v.strip():
            raise ValueError("Value cannot be empty")
        return v

    @field_validator("depends_on")
    @classmethod
    def validate_dependencies(cls, v: list[str]) -> list[str]:
        """Drop duplicate dependency ids, keeping order."""
        return list(dict.fromkeys(v))

    @property
    def is_terminal(self) -> bool:
        """Completed or parked in manual review."""
        return self.stage.is_terminal

    @property
    def is_settled(self) -> bool:
        """Whether the item no longer blocks phase advancement."""
        return self.stage == ItemStage.COMPLETED or self.waived
