"""
Typed event bus.

Publishing is best-effort: a failing sink is logged and never interrupts the
publisher or the other sinks. Async sinks are scheduled on the running loop
rather than awaited, so a slow dashboard cannot stall a phase.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable

from phasekeeper.models.base import EventCategory
from phasekeeper.models.events import WorkflowEvent

logger = logging.getLogger(__name__)

EventSink = Callable[[WorkflowEvent], Awaitable[None] | None]


class EventBus:
    """Fan-out of workflow events to subscribed sinks.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(print, categories=[EventCategory.NO_PROGRESS])
        bus.publish(event)
        await bus.drain()
    """

    def __init__(self) -> None:
        self._subscriptions: list[tuple[EventSink, frozenset[EventCategory] | None]] = []
        self._pending: set[asyncio.Task] = set()
        self._published = 0

    @property
    def published_count(self) -> int:
        """Number of events published so far."""
        return self._published

    def subscribe(
        self,
        sink: EventSink,
        categories: Iterable[EventCategory] | None = None,
    ) -> Callable[[], None]:
        """Register a sink.

        Args:
            sink: Callable receiving each event; may be a coroutine function
            categories: Restrict delivery to these categories (None = all)

        Returns:
            Function that removes the subscription
        """
        entry = (sink, frozenset(categories) if categories is not None else None)
        self._subscriptions.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscriptions:
                self._subscriptions.remove(entry)

        return unsubscribe

    def publish(self, event: WorkflowEvent) -> None:
        """Deliver an event to every matching sink."""
        self._published += 1
        for sink, categories in list(self._subscriptions):
            if categories is not None and event.category not in categories:
                continue
            try:
                result = sink(event)
                if inspect.isawaitable(result):
                    self._schedule(result, sink, event)
            except Exception as e:
                logger.warning(
                    f"Event sink {_sink_name(sink)} failed on {event.category.value}: {e}"
                )

    async def drain(self) -> None:
        """Wait for scheduled async deliveries to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, awaitable: Awaitable[None], sink: EventSink, event: WorkflowEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                f"No running event loop; dropping async delivery of "
                f"{event.category.value} to {_sink_name(sink)}"
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(self._deliver(awaitable, sink, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(
        self, awaitable: Awaitable[None], sink: EventSink, event: WorkflowEvent
    ) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.warning(
                f"Event sink {_sink_name(sink)} failed on {event.category.value}: {e}"
            )


def _sink_name(sink: EventSink) -> str:
    return getattr(sink, "__qualname__", None) or type(sink).__name__
