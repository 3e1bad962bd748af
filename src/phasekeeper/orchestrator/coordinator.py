"""
Parallel Execution Coordinator.

Partitions a phase's work items into waves and dispatches them to workers:

1. The dependency graph is checked for unknown ids and cycles before
   anything runs; a cycle fails the whole batch with zero dispatches.
2. Waves are built greedily in item order. An item joins the current wave
   when its dependencies sit in earlier waves and no other item of the wave
   targets the same normalised path; otherwise it is deferred.
3. Within a wave, dispatch is bounded by the ResourcePool. Items that do not
   fit wait in FIFO order. Wave N+1 starts only after every wave-N item is
   completed or in manual review.

Workers never touch shared state. They send WorkerReport messages through
an asyncio.Queue and the coordinator, the single consumer, applies them to
items, the pool and the progress tracker.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Collection, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import NamedTuple

from phasekeeper.events.bus import EventBus
from phasekeeper.models.base import ErrorClass, EventCategory, ItemStage, utcnow
from phasekeeper.models.events import WorkflowEvent
from phasekeeper.models.work_item import WorkItem
from phasekeeper.orchestrator.errors import (
    DependencyCycle,
    InvalidPath,
    StageRegression,
    UnknownDependency,
    WorkflowError,
)
from phasekeeper.orchestrator.paths import check_path, normalize_path
from phasekeeper.orchestrator.progress import ProgressTracker
from phasekeeper.orchestrator.recovery import RecoveryDecision, RetryHandler

logger = logging.getLogger(__name__)


class ResourceRequestTooLarge(WorkflowError):
    """A request exceeds the pool's total capacity and can never be granted."""

    code = "RESOURCE_REQUEST_TOO_LARGE"


class ResourcePool:
    """Named capacity units shared by in-flight work items.

    Availability never goes negative and never exceeds capacity. Requests
    that do not fit are queued in arrival order; a queued request is served
    before any later one, even if a later one would fit.

    Usage:
        pool = ResourcePool({"slots": 5})
        await pool.acquire({"slots": 1})
        ...
        pool.release({"slots": 1})
    """

    def __init__(self, capacity: Mapping[str, int]) -> None:
        for name, amount in capacity.items():
            if amount < 0:
                raise ValueError(f"Capacity for '{name}' cannot be negative")
        self._capacity = dict(capacity)
        self._available = dict(capacity)
        self._waiters: deque[tuple[dict[str, int], asyncio.Future]] = deque()

    @property
    def capacity(self) -> dict[str, int]:
        return dict(self._capacity)

    @property
    def available(self) -> dict[str, int]:
        return dict(self._available)

    @property
    def waiting(self) -> int:
        """Number of queued requests."""
        return sum(1 for _, fut in self._waiters if not fut.done())

    def fits_capacity(self, request: Mapping[str, int]) -> bool:
        """Whether the request could ever be granted."""
        return all(amount <= self._capacity.get(name, 0) for name, amount in request.items())

    def try_acquire(self, request: Mapping[str, int]) -> bool:
        """Grant the request now if it fits and nobody is queued ahead.

        Raises:
            ResourceRequestTooLarge: If the request exceeds total capacity
        """
        self._check(request)
        if self.waiting or not self._fits(request):
            return False
        self._take(request)
        return True

    async def acquire(self, request: Mapping[str, int]) -> None:
        """Wait until the request is granted.

        Raises:
            ResourceRequestTooLarge: If the request exceeds total capacity
        """
        if self.try_acquire(request):
            return

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.append((dict(request), future))
        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                # Granted in the same tick the waiter was cancelled
                self.release(request)
            self._wake()
            raise

    def release(self, request: Mapping[str, int]) -> None:
        """Return units to the pool.

        Raises:
            ValueError: If more is released than was taken
        """
        for name, amount in request.items():
            if self._available.get(name, 0) + amount > self._capacity.get(name, 0):
                raise ValueError(f"Release of '{name}' exceeds capacity")
        for name, amount in request.items():
            self._available[name] = self._available.get(name, 0) + amount
        self._wake()

    def _check(self, request: Mapping[str, int]) -> None:
        for name, amount in request.items():
            if amount < 0:
                raise ValueError(f"Request for '{name}' cannot be negative")
        if not self.fits_capacity(request):
            raise ResourceRequestTooLarge(
                f"Request {dict(request)} exceeds pool capacity {self._capacity}",
                request=dict(request),
                capacity=dict(self._capacity),
            )

    def _fits(self, request: Mapping[str, int]) -> bool:
        return all(amount <= self._available.get(name, 0) for name, amount in request.items())

    def _take(self, request: Mapping[str, int]) -> None:
        for name, amount in request.items():
            self._available[name] -= amount

    def _wake(self) -> None:
        while self._waiters:
            request, future = self._waiters[0]
            if future.done():
                self._waiters.popleft()
                continue
            if not self._fits(request):
                break
            self._waiters.popleft()
            self._take(request)
            future.set_result(None)


def find_cycle(items: Sequence[WorkItem]) -> list[str] | None:
    """Find a dependency cycle among items.

    Dependencies on ids outside the batch are ignored.

    Returns:
        The cycle as a closed path (first id repeated at the end), or None
    """
    graph = {item.item_id: [d for d in item.depends_on] for item in items}
    visiting: set[str] = set()
    visited: set[str] = set()

    for root in graph:
        if root in visited:
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        path: list[str] = [root]
        visiting.add(root)
        while stack:
            node, index = stack[-1]
            deps = graph[node]
            if index < len(deps):
                stack[-1] = (node, index + 1)
                dep = deps[index]
                if dep not in graph or dep in visited:
                    continue
                if dep in visiting:
                    return path[path.index(dep) :] + [dep]
                visiting.add(dep)
                path.append(dep)
                stack.append((dep, 0))
            else:
                stack.pop()
                path.pop()
                visiting.discard(node)
                visited.add(node)
    return None


def compute_waves(
    items: Sequence[WorkItem],
    satisfied: Collection[str] = (),
) -> list[list[WorkItem]]:
    """Partition items into conflict-free waves.

    Args:
        items: Items to schedule, in submission order
        satisfied: Ids outside the batch that dependencies may refer to

    Returns:
        Waves in execution order; no two items of a wave share a path

    Raises:
        UnknownDependency: If an item depends on an id that is neither in
            the batch nor satisfied
        DependencyCycle: If the dependency graph has a cycle
    """
    ids = {item.item_id for item in items}
    if len(ids) != len(items):
        raise ValueError("Work item ids must be unique")
    for item in items:
        for dep in item.depends_on:
            if dep not in ids and dep not in satisfied:
                raise UnknownDependency(item.item_id, dep)

    cycle = find_cycle(items)
    if cycle:
        raise DependencyCycle(cycle)

    scheduled = set(satisfied)
    remaining = list(items)
    waves: list[list[WorkItem]] = []
    while remaining:
        wave: list[WorkItem] = []
        paths: set[str] = set()
        deferred: list[WorkItem] = []
        for item in remaining:
            key = normalize_path(item.path)
            ready = all(dep in scheduled for dep in item.depends_on if dep in ids)
            if ready and key not in paths:
                wave.append(item)
                paths.add(key)
            else:
                deferred.append(item)
        if not wave:
            raise DependencyCycle([i.item_id for i in deferred])
        waves.append(wave)
        scheduled.update(item.item_id for item in wave)
        remaining = deferred
    return waves


class ReportKind(str, Enum):
    """Kinds of worker report."""

    PROGRESS = "progress"
    HEARTBEAT = "heartbeat"
    COMPLETED = "completed"
    FAILED = "failed"
    RETURNED = "returned"
    REQUEUE = "requeue"


@dataclass
class WorkerReport:
    """Message from a worker (or a retry timer) to the coordinator."""

    item_id: str
    attempt: int
    kind: ReportKind
    stage: ItemStage | None = None
    error_code: str | None = None
    error_class: ErrorClass | None = None
    detail: str = ""
    exc: BaseException | None = None
    timestamp: datetime = field(default_factory=utcnow)


class ItemReporter:
    """Handle a worker uses to report on its item.

    All methods enqueue a message and return immediately.
    """

    def __init__(self, item_id: str, attempt: int, queue: asyncio.Queue) -> None:
        self._item_id = item_id
        self._attempt = attempt
        self._queue = queue

    @property
    def item_id(self) -> str:
        return self._item_id

    @property
    def attempt(self) -> int:
        return self._attempt

    def progress(self, stage: ItemStage) -> None:
        """Report that the item reached a stage."""
        self._put(ReportKind.PROGRESS, stage=stage)

    def heartbeat(self) -> None:
        """Report liveness without a stage change."""
        self._put(ReportKind.HEARTBEAT)

    def complete(self) -> None:
        """Report success."""
        self._put(ReportKind.COMPLETED)

    def fail(
        self,
        error_code: str | None = None,
        detail: str = "",
        error_class: ErrorClass | None = None,
    ) -> None:
        """Report failure with an error code or explicit class."""
        self._put(ReportKind.FAILED, error_code=error_code, detail=detail, error_class=error_class)

    def _put(self, kind: ReportKind, **fields) -> None:
        self._queue.put_nowait(
            WorkerReport(item_id=self._item_id, attempt=self._attempt, kind=kind, **fields)
        )


Worker = Callable[[WorkItem, ItemReporter], Awaitable[None]]
RiskyRetryHook = Callable[[WorkItem], Awaitable[None]]


class _Attempt(NamedTuple):
    number: int
    task: asyncio.Task
    request: dict[str, int]
    path_key: str


@dataclass
class ExecutionResult:
    """Outcome of executing a batch of items.

    Attributes:
        waves: Item ids per wave, in execution order
        completed: Ids that completed
        manual_review: Ids parked in manual review
        dispatch_order: Ids in the order attempts were launched
    """

    waves: list[list[str]] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    manual_review: list[str] = field(default_factory=list)
    dispatch_order: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.manual_review


class ParallelExecutionCoordinator:
    """Dispatches work items in waves under resource limits.

    Usage:
        coordinator = ParallelExecutionCoordinator(
            pool=ResourcePool({"slots": 5}),
            tracker=tracker,
            retry_handler=RetryHandler(),
            workflow_id="workflow-1",
        )
        result = await coordinator.execute(items, worker)
    """

    def __init__(
        self,
        pool: ResourcePool,
        tracker: ProgressTracker,
        retry_handler: RetryHandler,
        workflow_id: str = "",
        bus: EventBus | None = None,
        allowed_roots: Sequence[str] = (".",),
        default_request: Mapping[str, int] | None = None,
        on_risky_retry: RiskyRetryHook | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            pool: Resource pool bounding concurrency
            tracker: Progress tracker holding the live items
            retry_handler: Failure policy and audit trail
            workflow_id: Workflow the items belong to
            bus: Event bus for failure notifications
            allowed_roots: Destination roots item paths must fall under
            default_request: Units an item consumes when it names none
            on_risky_retry: Awaited before a retry that repeats a write
        """
        self._pool = pool
        self._tracker = tracker
        self._retry = retry_handler
        self._workflow_id = workflow_id
        self._bus = bus
        self._allowed_roots = list(allowed_roots)
        self._default_request = dict(default_request or {"slots": 1})
        self._on_risky_retry = on_risky_retry
        self._held_paths: set[str] = set()

    @property
    def in_flight_paths(self) -> frozenset[str]:
        """Normalised paths currently held by running attempts."""
        return frozenset(self._held_paths)

    def plan(
        self,
        items: Iterable[WorkItem],
        satisfied: Collection[str] = (),
    ) -> list[list[WorkItem]]:
        """Compute the waves for a batch without running anything."""
        return compute_waves(list(items), satisfied)

    async def execute(
        self,
        items: Iterable[WorkItem],
        worker: Worker,
        satisfied: Collection[str] = (),
        blocked: Collection[str] = (),
    ) -> ExecutionResult:
        """Run a batch of tracked items to completion or manual review.

        Completed and waived items count as satisfied; items already in
        manual review are not re-run and block their dependents. Items left
        mid-attempt by an interruption are re-queued first.

        Args:
            items: Items of the batch (already registered with the tracker)
            worker: Coroutine function doing the work for one item
            satisfied: Ids outside the batch that are already complete
            blocked: Ids outside the batch that ended in manual review

        Returns:
            ExecutionResult for the batch

        Raises:
            DependencyCycle: If the batch has a cycle (nothing dispatched)
            UnknownDependency: If a dependency id is unknown
        """
        items = list(items)
        done = set(satisfied) | {i.item_id for i in items if i.is_settled}
        failed = set(blocked) | {
            i.item_id for i in items if i.stage == ItemStage.MANUAL_REVIEW and not i.waived
        }
        runnable = [i for i in items if i.item_id not in done and i.item_id not in failed]

        waves = compute_waves(runnable, done | failed)
        self._requeue_interrupted(runnable)
        result = ExecutionResult(waves=[[i.item_id for i in wave] for wave in waves])
        logger.info(
            f"Executing {len(runnable)} items in {len(waves)} waves "
            f"({len(done)} already satisfied)"
        )

        for index, wave in enumerate(waves):
            logger.debug(f"Wave {index + 1}/{len(waves)}: {[i.item_id for i in wave]}")
            await self._run_wave(wave, worker, failed, result)

        return result

    def _requeue_interrupted(self, items: Iterable[WorkItem]) -> None:
        for item in items:
            if item.stage == ItemStage.QUEUED:
                continue
            if item.stage != ItemStage.FAILED:
                self._tracker.transition(item.item_id, ItemStage.FAILED)
            self._tracker.transition(item.item_id, ItemStage.QUEUED)
            logger.info(f"Re-queued interrupted item {item.item_id}")

    async def _run_wave(
        self,
        wave: list[WorkItem],
        worker: Worker,
        failed: set[str],
        result: ExecutionResult,
    ) -> None:
        queue: asyncio.Queue[WorkerReport] = asyncio.Queue()
        ready: deque[WorkItem] = deque()
        running: dict[str, _Attempt] = {}
        timers: set[asyncio.Task] = set()
        attempts: dict[str, int] = {}
        outstanding: set[str] = set()

        def settle(item: WorkItem) -> None:
            self._finish(item, result, failed)
            outstanding.discard(item.item_id)

        for item in wave:
            blockers = [dep for dep in item.depends_on if dep in failed]
            if blockers:
                self._park(item, "DEPENDENCY_FAILED", f"dependencies in manual review: {blockers}")
                self._finish(item, result, failed)
            else:
                ready.append(item)
                outstanding.add(item.item_id)

        try:
            while outstanding:
                for item in self._dispatch_ready(ready, running, attempts, queue, worker, result):
                    settle(item)
                if not outstanding:
                    break

                if ready and not running and not timers:
                    # Capacity is held outside this batch; wait for it
                    request = self._request_for(ready[0])
                    await self._pool.acquire(request)
                    self._pool.release(request)
                    continue

                report = await queue.get()
                item = self._tracker.get(report.item_id)

                if report.kind == ReportKind.REQUEUE:
                    ready.append(item)
                    continue

                current = running.get(report.item_id)
                if current is None or current.number != report.attempt:
                    continue  # stale report from a finished attempt

                if report.kind == ReportKind.PROGRESS and report.stage is not None:
                    self._apply_progress(item, report.stage)
                elif report.kind == ReportKind.HEARTBEAT:
                    self._tracker.touch(item.item_id)
                elif report.kind in (ReportKind.COMPLETED, ReportKind.RETURNED):
                    self._release(running.pop(item.item_id))
                    self._tracker.transition(item.item_id, ItemStage.COMPLETED)
                    logger.debug(f"Item {item.item_id} completed")
                    settle(item)
                elif report.kind == ReportKind.FAILED:
                    self._release(running.pop(item.item_id))
                    decision = self._retry.handle_failure(
                        self._workflow_id,
                        item,
                        error_code=report.error_code,
                        error_class=report.error_class,
                        detail=report.detail,
                        exc=report.exc,
                    )
                    if await self._after_failure(item, decision, queue, ready, timers):
                        settle(item)
        finally:
            pending = [attempt.task for attempt in running.values()] + list(timers)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for attempt in running.values():
                self._release(attempt)
            running.clear()

    def _dispatch_ready(
        self,
        ready: deque[WorkItem],
        running: dict[str, _Attempt],
        attempts: dict[str, int],
        queue: asyncio.Queue,
        worker: Worker,
        result: ExecutionResult,
    ) -> list[WorkItem]:
        """Launch queued items while capacity allows.

        Returns:
            Items that failed validation and are now in manual review
        """
        rejected: list[WorkItem] = []
        while ready:
            item = ready[0]
            request = self._request_for(item)

            if not self._pool.fits_capacity(request):
                ready.popleft()
                self._tracker.transition(item.item_id, ItemStage.VALIDATING)
                self._fail_validation(
                    item,
                    "RESOURCE_REQUEST_TOO_LARGE",
                    f"request {request} exceeds capacity {self._pool.capacity}",
                )
                rejected.append(item)
                continue

            if not self._pool.try_acquire(request):
                break  # head of line waits

            ready.popleft()
            self._tracker.transition(item.item_id, ItemStage.VALIDATING)
            try:
                key = check_path(item.path, self._allowed_roots)
            except InvalidPath as e:
                self._pool.release(request)
                self._fail_validation(item, e.error_code, str(e))
                rejected.append(item)
                continue

            number = attempts.get(item.item_id, 0) + 1
            attempts[item.item_id] = number
            reporter = ItemReporter(item.item_id, number, queue)
            task = asyncio.create_task(
                self._invoke(worker, item.model_copy(deep=True), reporter),
                name=f"worker:{item.item_id}:{number}",
            )
            self._held_paths.add(key)
            running[item.item_id] = _Attempt(number, task, request, key)
            result.dispatch_order.append(item.item_id)
            logger.debug(f"Dispatched {item.item_id} (attempt {number})")
        return rejected

    def _request_for(self, item: WorkItem) -> dict[str, int]:
        return dict(item.resources or self._default_request)

    async def _invoke(self, worker: Worker, item: WorkItem, reporter: ItemReporter) -> None:
        try:
            await worker(item, reporter)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reporter._put(ReportKind.FAILED, exc=e, detail=str(e))
            return
        reporter._put(ReportKind.RETURNED)

    def _apply_progress(self, item: WorkItem, stage: ItemStage) -> None:
        if stage in (ItemStage.COMPLETED, ItemStage.FAILED, ItemStage.MANUAL_REVIEW):
            logger.warning(f"Item {item.item_id}: use complete()/fail() instead of {stage.value}")
            return
        if stage == item.stage:
            self._tracker.touch(item.item_id)
            return
        try:
            self._tracker.transition(item.item_id, stage)
        except StageRegression as e:
            logger.warning(f"Ignoring report: {e}")

    def _fail_validation(self, item: WorkItem, error_code: str, detail: str) -> None:
        """Validation failures cannot be fixed by retrying; park the item."""
        self._tracker.transition(item.item_id, ItemStage.FAILED)
        self._park(item, error_code, detail)

    def _park(self, item: WorkItem, error_code: str, detail: str) -> None:
        self._retry.route_to_manual_review(self._workflow_id, item, error_code, detail)
        self._tracker.transition(item.item_id, ItemStage.MANUAL_REVIEW)
        self._publish(
            EventCategory.ITEM_MANUAL_REVIEW,
            item,
            {"item_id": item.item_id, "error_code": error_code, "detail": detail},
        )

    async def _after_failure(
        self,
        item: WorkItem,
        decision: RecoveryDecision,
        queue: asyncio.Queue,
        ready: deque[WorkItem],
        timers: set[asyncio.Task],
    ) -> bool:
        """Apply a recovery decision. Returns True when the item is terminal."""
        self._tracker.transition(item.item_id, ItemStage.FAILED)
        payload = {
            "item_id": item.item_id,
            "error_class": decision.error_class.value,
            "error_code": decision.error_code,
            "retry_count": item.retry_count,
            "detail": item.last_error,
        }

        if not decision.should_retry:
            self._tracker.transition(item.item_id, ItemStage.MANUAL_REVIEW)
            self._publish(EventCategory.ITEM_MANUAL_REVIEW, item, payload)
            return True

        self._publish(EventCategory.ITEM_FAILED, item, payload)
        if decision.risky and self._on_risky_retry is not None:
            await self._on_risky_retry(item)
        self._tracker.transition(item.item_id, ItemStage.QUEUED)

        if decision.delay_seconds > 0:
            timer = asyncio.create_task(
                self._requeue_later(item.item_id, decision.delay_seconds, queue),
                name=f"retry:{item.item_id}",
            )
            timers.add(timer)
            timer.add_done_callback(timers.discard)
        else:
            ready.append(item)
        return False

    async def _requeue_later(self, item_id: str, delay: float, queue: asyncio.Queue) -> None:
        await asyncio.sleep(delay)
        queue.put_nowait(WorkerReport(item_id=item_id, attempt=0, kind=ReportKind.REQUEUE))

    def _release(self, attempt: _Attempt) -> None:
        self._pool.release(attempt.request)
        self._held_paths.discard(attempt.path_key)

    def _finish(self, item: WorkItem, result: ExecutionResult, failed: set[str]) -> None:
        if item.stage == ItemStage.COMPLETED:
            result.completed.append(item.item_id)
        else:
            result.manual_review.append(item.item_id)
            failed.add(item.item_id)

    def _publish(self, category: EventCategory, item: WorkItem, payload: dict) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            WorkflowEvent(
                category=category,
                workflow_id=self._workflow_id,
                phase=item.owning_phase,
                payload=payload,
            )
        )
