"""
Periodic background tasks.

Liveness checks and timer checkpoints run as PeriodicTask instances on the
event loop instead of ad hoc polling loops.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

PeriodicCallback = Callable[[], Awaitable[None] | None]


class PeriodicTask:
    """Runs a callback every interval seconds until stopped.

    The first run happens one interval after start(). Callback errors are
    logged and do not stop the loop.

    Usage:
        task = PeriodicTask("stuck-check", 300, detector_check)
        task.start()
        ...
        await task.stop()

        # or
        async with PeriodicTask("timer-checkpoint", 1800, take_checkpoint):
            await run_phase()
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: PeriodicCallback,
    ) -> None:
        """Initialize the periodic task.

        Args:
            name: Name used in logs and as the asyncio task name
            interval_seconds: Seconds between runs
            callback: Sync or async callable to run
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._name = name
        self._interval = interval_seconds
        self._callback = callback
        self._task: asyncio.Task | None = None
        self._runs = 0

    @property
    def name(self) -> str:
        """Task name."""
        return self._name

    @property
    def running(self) -> bool:
        """Whether the loop is scheduled."""
        return self._task is not None and not self._task.done()

    @property
    def runs(self) -> int:
        """Number of completed callback runs."""
        return self._runs

    def start(self) -> None:
        """Schedule the loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self._name)

    def cancel(self) -> None:
        """Request the loop to stop without waiting for it."""
        if self._task is not None:
            self._task.cancel()

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish.

        A cancellation aimed at the caller while it waits is re-raised.
        """
        if self._task is None:
            return
        self.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        finally:
            self._task = None

    async def run_once(self) -> None:
        """Run the callback immediately, logging any error."""
        try:
            result = self._callback()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Periodic task '{self._name}' failed: {e}")
        finally:
            self._runs += 1

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.run_once()

    async def __aenter__(self) -> "PeriodicTask":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
