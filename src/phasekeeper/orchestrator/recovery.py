"""
Retry / Error Recovery Handler.

Classifies item failures and decides between a retry and manual review:

- transient (EAGAIN, EBUSY, ETIMEDOUT, timeouts, anything unrecognised):
  up to 3 retries, the first immediate, then 1s and 4s
- permission (EACCES, EPERM, EROFS): fixed 5s delay, at most 2 retries
- permanent (ENOSPC, EDQUOT, invalid content or path): straight to
  manual review

Every decision is appended to the audit trail.
"""

import asyncio
import errno
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from phasekeeper.config.models import RetryConfig, RetryPolicyConfig
from phasekeeper.models.base import ErrorClass, RecoveryAction, utcnow
from phasekeeper.models.events import AuditEntry
from phasekeeper.models.work_item import WorkItem
from phasekeeper.orchestrator.errors import InvalidPath
from phasekeeper.utils.fileio import append_line

logger = logging.getLogger(__name__)

TRANSIENT_CODES = frozenset({"EAGAIN", "EBUSY", "ETIMEDOUT", "ECONNRESET", "EINTR", "TIMEOUT"})
PERMISSION_CODES = frozenset({"EACCES", "EPERM", "EROFS"})
PERMANENT_CODES = frozenset(
    {
        "ENOSPC",
        "EDQUOT",
        "INVALID_CONTENT",
        "INVALID_PATH",
        "PATH_TRAVERSAL",
        "DEPENDENCY_FAILED",
        "RESOURCE_REQUEST_TOO_LARGE",
    }
)


def error_code_for(exc: BaseException) -> str | None:
    """Derive an error code from an exception, if one applies."""
    if isinstance(exc, InvalidPath):
        return exc.error_code
    if isinstance(exc, OSError) and exc.errno is not None:
        return errno.errorcode.get(exc.errno)
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return "ETIMEDOUT"
    if isinstance(exc, (ValueError, UnicodeError)):
        return "INVALID_CONTENT"
    return None


def classify(error_code: str | None = None, exc: BaseException | None = None) -> ErrorClass:
    """Classify a failure.

    Args:
        error_code: Explicit error code reported by a worker
        exc: Exception raised by a worker

    Returns:
        The error class; unrecognised failures count as transient
    """
    code = error_code or (error_code_for(exc) if exc is not None else None)
    if code is None:
        return ErrorClass.TRANSIENT
    code = code.upper()
    if code in PERMANENT_CODES:
        return ErrorClass.PERMANENT
    if code in PERMISSION_CODES:
        return ErrorClass.PERMISSION
    return ErrorClass.TRANSIENT


@dataclass
class RecoveryDecision:
    """Outcome of handling one failure.

    Attributes:
        action: Retry or manual review
        error_class: Classification of the failure
        error_code: Error code, if known
        delay_seconds: Wait before the retry
        retry_number: Which retry this is (0 for manual review)
        risky: The retry repeats a write that already happened
    """

    action: RecoveryAction
    error_class: ErrorClass
    error_code: str | None
    delay_seconds: float = 0.0
    retry_number: int = 0
    risky: bool = False

    @property
    def should_retry(self) -> bool:
        return self.action == RecoveryAction.RETRY


class AuditTrail:
    """Append-only log of recovery decisions.

    Entries are kept in memory and, when a path is given, appended as JSON
    lines to that file.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path else None
        self._entries: list[AuditEntry] = []
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def load(cls, path: str | Path) -> "AuditTrail":
        """Open a trail, reading entries already written to the file."""
        trail = cls(path)
        if trail._path is not None and trail._path.exists():
            for line in trail._path.read_text(encoding="utf-8").splitlines():
                if line.strip():
                    trail._entries.append(AuditEntry.model_validate_json(line))
        return trail

    @property
    def path(self) -> Path | None:
        return self._path

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, entry: AuditEntry) -> None:
        """Append an entry."""
        self._entries.append(entry)
        if self._path is not None:
            append_line(self._path, entry.model_dump_json())

    def entries(self, item_id: str | None = None) -> list[AuditEntry]:
        """Recorded entries, oldest first, optionally for one item."""
        return [e for e in self._entries if item_id is None or e.item_id == item_id]


class RetryHandler:
    """Applies retry policies to failed work items.

    Usage:
        handler = RetryHandler(RetryConfig(), AuditTrail(path))
        decision = handler.handle_failure("wf-1", item, error_code="EBUSY")
        if decision.should_retry:
            await asyncio.sleep(decision.delay_seconds)
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        audit: AuditTrail | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config or RetryConfig()
        self._audit = audit or AuditTrail()
        self._clock = clock

    @property
    def audit(self) -> AuditTrail:
        return self._audit

    def policy_for(self, error_class: ErrorClass) -> RetryPolicyConfig:
        """Retry policy for an error class."""
        return {
            ErrorClass.TRANSIENT: self._config.transient,
            ErrorClass.PERMISSION: self._config.permission,
            ErrorClass.PERMANENT: self._config.permanent,
        }[error_class]

    def handle_failure(
        self,
        workflow_id: str,
        item: WorkItem,
        error_code: str | None = None,
        error_class: ErrorClass | None = None,
        detail: str = "",
        exc: BaseException | None = None,
    ) -> RecoveryDecision:
        """Decide what happens to a failed item and record the decision.

        Increments item.retry_count when a retry is granted; the count never
        exceeds the policy maximum of the failure's class.

        Args:
            workflow_id: Owning workflow
            item: The failed item
            error_code: Error code reported by the worker
            error_class: Explicit classification, overriding the code
            detail: Failure detail
            exc: Exception raised by the worker

        Returns:
            The recovery decision
        """
        code = error_code or (error_code_for(exc) if exc is not None else None)
        cls = error_class or classify(code)
        policy = self.policy_for(cls)
        detail = detail or (str(exc) if exc is not None else "")

        item.last_error_class = cls
        item.last_error = detail or code

        if item.retry_count < policy.max_retries:
            item.retry_count += 1
            decision = RecoveryDecision(
                action=RecoveryAction.RETRY,
                error_class=cls,
                error_code=code,
                delay_seconds=policy.delay_for(item.retry_count),
                retry_number=item.retry_count,
                risky=item.wrote_output,
            )
            logger.info(
                f"Item {item.item_id} failed ({cls.value}, {code or 'no code'}); "
                f"retry {item.retry_count}/{policy.max_retries} "
                f"in {decision.delay_seconds:g}s"
            )
        else:
            decision = RecoveryDecision(
                action=RecoveryAction.MANUAL_REVIEW,
                error_class=cls,
                error_code=code,
            )
            logger.warning(
                f"Item {item.item_id} moved to manual review after "
                f"{item.retry_count} retries ({cls.value}, {code or 'no code'}): {detail}"
            )

        self._record(workflow_id, item, decision, detail)
        return decision

    def route_to_manual_review(
        self,
        workflow_id: str,
        item: WorkItem,
        error_code: str,
        detail: str,
    ) -> RecoveryDecision:
        """Park an item in manual review without consuming retries."""
        item.last_error_class = ErrorClass.PERMANENT
        item.last_error = detail
        decision = RecoveryDecision(
            action=RecoveryAction.MANUAL_REVIEW,
            error_class=ErrorClass.PERMANENT,
            error_code=error_code,
        )
        logger.warning(f"Item {item.item_id} routed to manual review: {detail}")
        self._record(workflow_id, item, decision, detail)
        return decision

    def _record(
        self,
        workflow_id: str,
        item: WorkItem,
        decision: RecoveryDecision,
        detail: str,
    ) -> None:
        self._audit.record(
            AuditEntry(
                timestamp=self._clock(),
                workflow_id=workflow_id,
                item_id=item.item_id,
                path=item.path,
                phase=item.owning_phase,
                error_class=decision.error_class,
                error_code=decision.error_code,
                detail=detail,
                action=decision.action,
                retry_count=item.retry_count,
                delay_seconds=decision.delay_seconds,
                risky=decision.risky,
            )
        )
