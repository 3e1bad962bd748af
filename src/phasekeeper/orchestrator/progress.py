"""
Progress Tracker.

Records per-item stage transitions and derives weighted progress. Each stage
on the forward path carries a weight (queued 0 ... completed 5); aggregate
progress is the sum of item weights over items x 5.

An item's weight is taken from the furthest stage it ever reached, so a
retry that sends it back to queued never lowers the reported progress.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from phasekeeper.models.base import (
    MAX_STAGE_WEIGHT,
    STAGE_ORDER,
    ItemStage,
    utcnow,
)
from phasekeeper.models.work_item import WorkItem
from phasekeeper.orchestrator.errors import StageRegression

logger = logging.getLogger(__name__)

# Called with (item, previous_stage) after every change
ProgressListener = Callable[[WorkItem, ItemStage], None]

_ACTIVE_STAGES = frozenset(STAGE_ORDER[:-1])


def is_legal_transition(current: ItemStage, requested: ItemStage) -> bool:
    """Whether an item may move from one stage to another.

    Args:
        current: Stage the item is in
        requested: Stage it should move to

    Returns:
        True for forward moves within an attempt, failure from an active
        stage, retry or manual review from failed, and parking a queued
        item in manual review without dispatch
    """
    if current in _ACTIVE_STAGES and requested in STAGE_ORDER:
        return STAGE_ORDER.index(requested) > STAGE_ORDER.index(current)
    if current in _ACTIVE_STAGES and requested == ItemStage.FAILED:
        return True
    if current == ItemStage.FAILED:
        return requested in (ItemStage.QUEUED, ItemStage.MANUAL_REVIEW)
    if current == ItemStage.QUEUED and requested == ItemStage.MANUAL_REVIEW:
        return True
    return False


class ProgressTracker:
    """Tracks work items and their stages.

    The tracker holds references to the live WorkItem objects; the
    coordinator is the only caller that moves them between stages.

    Usage:
        tracker = ProgressTracker()
        tracker.register(item)
        tracker.transition(item.item_id, ItemStage.VALIDATING)
        tracker.percentage()  # 20.0 for a single item
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._items: dict[str, WorkItem] = {}
        self._listeners: list[ProgressListener] = []
        self._last_activity: dict[str, datetime] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def register(self, item: WorkItem) -> WorkItem:
        """Start tracking an item.

        Raises:
            ValueError: If an item with the same id is already tracked
        """
        if item.item_id in self._items:
            raise ValueError(f"Duplicate work item id: {item.item_id}")
        self._items[item.item_id] = item
        logger.debug(f"Registered item {item.item_id} ({item.owning_phase}: {item.path})")
        return item

    def load(self, items: Iterable[WorkItem]) -> None:
        """Replace all tracked items, e.g. after a restore."""
        self._items = {}
        self._last_activity = {}
        for item in items:
            self.register(item)

    def get(self, item_id: str) -> WorkItem:
        """Get a tracked item.

        Raises:
            KeyError: If the item is not tracked
        """
        try:
            return self._items[item_id]
        except KeyError:
            raise KeyError(f"Unknown work item: {item_id}") from None

    def items(self, phase: str | None = None) -> list[WorkItem]:
        """Tracked items in registration order, optionally for one phase."""
        return [i for i in self._items.values() if phase is None or i.owning_phase == phase]

    def snapshot(self) -> list[WorkItem]:
        """Deep copies of all tracked items."""
        return [item.model_copy(deep=True) for item in self._items.values()]

    def add_listener(self, listener: ProgressListener) -> None:
        """Register a callback fired after every stage change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ProgressListener) -> None:
        """Remove a previously registered callback."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def transition(self, item_id: str, stage: ItemStage) -> WorkItem:
        """Move an item to a new stage.

        Args:
            item_id: Tracked item id
            stage: Requested stage

        Returns:
            The updated item

        Raises:
            StageRegression: If the move is not allowed
        """
        item = self.get(item_id)
        previous = item.stage
        if not is_legal_transition(previous, stage):
            raise StageRegression(item_id, previous.value, stage.value)

        now = self._clock()
        item.stage = stage
        item.last_update = now
        if stage.weight is not None and stage.weight > item.high_water_stage.weight:
            item.high_water_stage = stage
        if stage == ItemStage.WRITING:
            item.wrote_output = True
        self._last_activity[item.owning_phase] = now

        logger.debug(f"Item {item_id}: {previous.value} -> {stage.value}")
        self._notify(item, previous)
        return item

    def touch(self, item_id: str) -> None:
        """Record a heartbeat without changing stage."""
        item = self.get(item_id)
        now = self._clock()
        item.last_update = now
        self._last_activity[item.owning_phase] = now

    def last_activity(self, phase: str | None = None) -> datetime | None:
        """Most recent stage change or heartbeat, optionally for one phase."""
        if phase is not None:
            return self._last_activity.get(phase)
        return max(self._last_activity.values(), default=None)

    def item_percentage(self, item_id: str) -> float:
        """Progress of a single item."""
        item = self.get(item_id)
        return item.high_water_stage.weight / MAX_STAGE_WEIGHT * 100.0

    def percentage(self, phase: str | None = None) -> float:
        """Weighted aggregate progress, 0.0 when there are no items."""
        items = self.items(phase)
        if not items:
            return 0.0
        total = sum(item.high_water_stage.weight for item in items)
        return total / (len(items) * MAX_STAGE_WEIGHT) * 100.0

    def stage_counts(self, phase: str | None = None) -> dict[ItemStage, int]:
        """Number of items per stage."""
        counts = {stage: 0 for stage in ItemStage}
        for item in self.items(phase):
            counts[item.stage] += 1
        return counts

    def completed_count(self, phase: str | None = None) -> int:
        """Number of completed items."""
        return sum(1 for item in self.items(phase) if item.stage == ItemStage.COMPLETED)

    def outstanding(self, phase: str) -> list[str]:
        """Ids of items in a phase that are neither completed nor waived."""
        return [item.item_id for item in self.items(phase) if not item.is_settled]

    def _notify(self, item: WorkItem, previous: ItemStage) -> None:
        for listener in list(self._listeners):
            try:
                listener(item, previous)
            except Exception as e:
                logger.warning(f"Progress listener failed for {item.item_id}: {e}")
