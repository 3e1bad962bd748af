"""
Phasekeeper Test Configuration and Fixtures

Shared fixtures for the orchestration core. Everything runs against a
temporary state directory with a three-phase workflow, millisecond retry
delays and a gate timeout short enough to exercise re-prompting.

Fixture Categories:
- Configuration: Workflow definition and a fast PhasekeeperConfig
- Time: A controllable clock for time-dependent components
- Events: A bus with a collecting sink
- Items and workers: Factories for work items and well-behaved workers
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from phasekeeper.config.models import (
    CheckpointConfig,
    CoordinatorConfig,
    GateDefinition,
    MonitorConfig,
    PhasekeeperConfig,
    RetryConfig,
    RetryPolicyConfig,
    StorageConfig,
    WorkflowDefinition,
)
from phasekeeper.events.bus import EventBus
from phasekeeper.models.base import EventCategory, ItemStage
from phasekeeper.models.events import WorkflowEvent
from phasekeeper.models.work_item import WorkItem
from phasekeeper.orchestrator import WorkflowOrchestrator

WORKFLOW_TYPE = "new-project"

# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Manually advanced clock, callable like utcnow()."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Return a fake clock starting at a fixed instant."""
    return FakeClock()


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Return the state directory for the test."""
    return tmp_path / "state"


@pytest.fixture
def workflow_definition() -> WorkflowDefinition:
    """Three phases with a gate after research that times out in 60ms."""
    return WorkflowDefinition(
        phases=["discovery", "research", "planning"],
        gates=[GateDefinition(name="post-research", after="research", timeout_minutes=0.001)],
        required_keys=["project_name"],
    )


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry policies with the default shape but millisecond delays."""
    return RetryConfig(
        transient=RetryPolicyConfig(max_retries=3, base_delay_seconds=0.01),
        permission=RetryPolicyConfig(
            max_retries=2,
            base_delay_seconds=0.01,
            backoff_factor=1.0,
            immediate_first=False,
        ),
        permanent=RetryPolicyConfig(max_retries=0),
    )


@pytest.fixture
def config(
    state_dir: Path,
    workflow_definition: WorkflowDefinition,
    fast_retry: RetryConfig,
) -> PhasekeeperConfig:
    """Configuration used by orchestrator tests."""
    return PhasekeeperConfig(
        storage=StorageConfig(state_dir=str(state_dir)),
        workflows={WORKFLOW_TYPE: workflow_definition},
        checkpoints=CheckpointConfig(interval_minutes=60, progress_step=50, retention=5),
        monitor=MonitorConfig(enabled=False),
        coordinator=CoordinatorConfig(capacity={"slots": 3}),
        retry=fast_retry,
    )


# =============================================================================
# Event Fixtures
# =============================================================================


class EventCollector:
    """Sink that remembers every event it receives."""

    def __init__(self) -> None:
        self.events: list[WorkflowEvent] = []

    def __call__(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def of(self, category: EventCategory) -> list[WorkflowEvent]:
        return [e for e in self.events if e.category == category]

    def categories(self) -> list[EventCategory]:
        return [e.category for e in self.events]


@pytest.fixture
def collector() -> EventCollector:
    """Return an empty event collector."""
    return EventCollector()


@pytest.fixture
def bus(collector: EventCollector) -> EventBus:
    """Event bus with the collector subscribed to everything."""
    bus = EventBus()
    bus.subscribe(collector)
    return bus


@pytest.fixture
def orchestrator(config: PhasekeeperConfig, bus: EventBus) -> WorkflowOrchestrator:
    """Orchestrator over the test configuration."""
    return WorkflowOrchestrator(config, bus=bus)


# =============================================================================
# Work Items and Workers
# =============================================================================


@pytest.fixture
def make_item() -> Callable[..., WorkItem]:
    """
    Factory for work items.

    Usage:
        def test_something(make_item):
            item = make_item("a", path="docs/a.md", depends_on=["b"])
    """

    def factory(
        item_id: str,
        phase: str = "discovery",
        path: str | None = None,
        depends_on: list[str] | None = None,
        resources: dict[str, int] | None = None,
        **fields,
    ) -> WorkItem:
        return WorkItem(
            item_id=item_id,
            path=path or f"docs/{item_id}.md",
            owning_phase=phase,
            depends_on=depends_on or [],
            resources=resources,
            **fields,
        )

    return factory


async def staged_worker(item, reporter) -> None:
    """Walk an item through creating, writing and verifying, then complete."""
    for stage in (ItemStage.CREATING, ItemStage.WRITING, ItemStage.VERIFYING):
        reporter.progress(stage)
        await asyncio.sleep(0)
    reporter.complete()


@pytest.fixture
def worker():
    """Return a worker that always succeeds."""
    return staged_worker
