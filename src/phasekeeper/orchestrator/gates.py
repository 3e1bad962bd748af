"""
Approval gates.

An ApprovalGate wraps the persisted GateRecord of one gate with an
asyncio.Event so a waiting advance can be woken by a decision made elsewhere
in the process.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from phasekeeper.config.models import GateDefinition
from phasekeeper.models.base import GateOutcome, utcnow
from phasekeeper.models.state import GateRecord
from phasekeeper.orchestrator.errors import InvalidTransition

logger = logging.getLogger(__name__)

RESOLVED_OUTCOMES = frozenset({GateOutcome.APPROVED, GateOutcome.REJECTED})


class ApprovalGate:
    """A blocking point between two phases.

    Usage:
        gate = ApprovalGate(definition, record)
        outcome = await gate.wait()     # TIMED_OUT after definition.timeout_seconds
        gate.resolve(approved=True, notes="ok", decided_by="lead")
    """

    def __init__(
        self,
        definition: GateDefinition,
        record: GateRecord,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if record.name != definition.name:
            raise ValueError(f"Record {record.name} does not belong to gate {definition.name}")
        self._definition = definition
        self._record = record
        self._clock = clock
        self._event = asyncio.Event()
        self._waiters = 0
        if self.is_resolved:
            self._event.set()

    @property
    def name(self) -> str:
        return self._definition.name

    @property
    def definition(self) -> GateDefinition:
        return self._definition

    @property
    def record(self) -> GateRecord:
        return self._record

    @property
    def outcome(self) -> GateOutcome:
        return self._record.outcome

    @property
    def is_resolved(self) -> bool:
        return self._record.outcome in RESOLVED_OUTCOMES

    @property
    def has_waiters(self) -> bool:
        """Whether a coroutine is currently blocked in wait()."""
        return self._waiters > 0

    async def wait(self, timeout_seconds: float | None = None) -> GateOutcome:
        """Issue one prompt and wait for a decision.

        Args:
            timeout_seconds: Prompt timeout; defaults to the gate's own

        Returns:
            APPROVED or REJECTED, or TIMED_OUT if nobody decided in time
        """
        if self.is_resolved:
            return self._record.outcome

        timeout = timeout_seconds
        if timeout is None:
            timeout = self._definition.timeout_seconds
        self._record.prompts += 1
        self._record.requested_at = self._clock()
        self._record.outcome = GateOutcome.PENDING
        logger.info(f"Awaiting approval '{self.name}' (prompt {self._record.prompts})")

        self._waiters += 1
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            if not self.is_resolved:
                self._record.outcome = GateOutcome.TIMED_OUT
                logger.warning(
                    f"Approval '{self.name}' timed out after {timeout:g}s "
                    f"(prompt {self._record.prompts})"
                )
        finally:
            self._waiters -= 1
        return self._record.outcome

    def resolve(
        self,
        approved: bool,
        notes: str | None = None,
        decided_by: str | None = None,
    ) -> GateRecord:
        """Record a decision and wake any waiter.

        Raises:
            InvalidTransition: If the gate was already decided
        """
        if self.is_resolved:
            raise InvalidTransition(
                f"Gate '{self.name}' is already {self._record.outcome.value}",
                gate=self.name,
            )
        self._record.outcome = GateOutcome.APPROVED if approved else GateOutcome.REJECTED
        self._record.resolved_at = self._clock()
        self._record.notes = notes
        self._record.decided_by = decided_by
        self._event.set()
        logger.info(f"Gate '{self.name}' {self._record.outcome.value}")
        return self._record
