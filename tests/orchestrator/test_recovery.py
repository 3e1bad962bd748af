"""Tests for failure classification, retry policies and the audit trail."""

import asyncio
import errno

import pytest

from phasekeeper.config.models import RetryConfig
from phasekeeper.models import ErrorClass, RecoveryAction
from phasekeeper.orchestrator import (
    AuditTrail,
    InvalidPath,
    RetryHandler,
    classify,
    error_code_for,
)


@pytest.fixture
def handler(tmp_path) -> RetryHandler:
    return RetryHandler(RetryConfig(), AuditTrail(tmp_path / "audit.jsonl"))


# =============================================================================
# Classification
# =============================================================================


class TestClassify:
    """Tests for classify() and error_code_for()."""

    @pytest.mark.parametrize("code", ["EAGAIN", "EBUSY", "ETIMEDOUT", "eagain"])
    def test_transient_codes(self, code):
        assert classify(code) == ErrorClass.TRANSIENT

    @pytest.mark.parametrize("code", ["EACCES", "EPERM", "EROFS"])
    def test_permission_codes(self, code):
        assert classify(code) == ErrorClass.PERMISSION

    @pytest.mark.parametrize("code", ["ENOSPC", "EDQUOT", "INVALID_CONTENT", "PATH_TRAVERSAL"])
    def test_permanent_codes(self, code):
        assert classify(code) == ErrorClass.PERMANENT

    def test_unknown_failures_are_transient(self):
        assert classify(None) == ErrorClass.TRANSIENT
        assert classify("SOMETHING_NEW") == ErrorClass.TRANSIENT
        assert classify(exc=RuntimeError("unexpected")) == ErrorClass.TRANSIENT

    def test_codes_from_exceptions(self):
        assert error_code_for(PermissionError(errno.EACCES, "denied")) == "EACCES"
        assert error_code_for(OSError(errno.ENOSPC, "full")) == "ENOSPC"
        assert error_code_for(asyncio.TimeoutError()) == "ETIMEDOUT"
        assert error_code_for(ValueError("bad markdown")) == "INVALID_CONTENT"
        assert error_code_for(InvalidPath("../x", "escape", "PATH_TRAVERSAL")) == "PATH_TRAVERSAL"
        assert error_code_for(RuntimeError("?")) is None

    def test_classify_exceptions(self):
        assert classify(exc=PermissionError(errno.EACCES, "denied")) == ErrorClass.PERMISSION
        assert classify(exc=OSError(errno.EDQUOT, "quota")) == ErrorClass.PERMANENT
        assert classify(exc=TimeoutError()) == ErrorClass.TRANSIENT


# =============================================================================
# RetryHandler
# =============================================================================


class TestRetryHandler:
    """Tests for retry decisions."""

    def test_transient_schedule(self, handler, make_item):
        item = make_item("a")

        decisions = [handler.handle_failure("wf-1", item, error_code="EBUSY") for _ in range(4)]

        assert [d.action for d in decisions] == [RecoveryAction.RETRY] * 3 + [
            RecoveryAction.MANUAL_REVIEW
        ]
        assert [d.delay_seconds for d in decisions[:3]] == [0.0, 1.0, 4.0]
        assert [d.retry_number for d in decisions[:3]] == [1, 2, 3]
        assert item.retry_count == 3
        assert item.last_error_class == ErrorClass.TRANSIENT

    def test_permission_schedule(self, handler, make_item):
        item = make_item("a")

        decisions = [handler.handle_failure("wf-1", item, error_code="EACCES") for _ in range(3)]

        assert [d.action for d in decisions] == [
            RecoveryAction.RETRY,
            RecoveryAction.RETRY,
            RecoveryAction.MANUAL_REVIEW,
        ]
        assert [d.delay_seconds for d in decisions[:2]] == [5.0, 5.0]
        assert item.retry_count == 2

    def test_permanent_goes_straight_to_review(self, handler, make_item):
        item = make_item("a")

        decision = handler.handle_failure("wf-1", item, error_code="ENOSPC", detail="disk full")

        assert decision.action == RecoveryAction.MANUAL_REVIEW
        assert not decision.should_retry
        assert item.retry_count == 0
        assert item.last_error == "disk full"

    def test_explicit_class_overrides_code(self, handler, make_item):
        item = make_item("a")

        decision = handler.handle_failure(
            "wf-1", item, error_code="EBUSY", error_class=ErrorClass.PERMANENT
        )

        assert decision.action == RecoveryAction.MANUAL_REVIEW
        assert decision.error_class == ErrorClass.PERMANENT

    def test_exception_detail(self, handler, make_item):
        item = make_item("a")

        decision = handler.handle_failure("wf-1", item, exc=PermissionError(errno.EPERM, "nope"))

        assert decision.error_code == "EPERM"
        assert decision.error_class == ErrorClass.PERMISSION
        assert "nope" in item.last_error

    def test_retry_after_write_is_risky(self, handler, make_item):
        item = make_item("a", wrote_output=True)

        decision = handler.handle_failure("wf-1", item, error_code="EAGAIN")

        assert decision.should_retry
        assert decision.risky

    def test_route_to_manual_review_keeps_retries(self, handler, make_item):
        item = make_item("a", retry_count=1)

        decision = handler.route_to_manual_review("wf-1", item, "PATH_TRAVERSAL", "escapes root")

        assert decision.action == RecoveryAction.MANUAL_REVIEW
        assert item.retry_count == 1
        entry = handler.audit.entries("a")[-1]
        assert entry.error_code == "PATH_TRAVERSAL"
        assert entry.error_class == ErrorClass.PERMANENT


# =============================================================================
# AuditTrail
# =============================================================================


class TestAuditTrail:
    """Tests for the append-only audit trail."""

    def test_every_decision_is_recorded(self, handler, make_item):
        first, second = make_item("a"), make_item("b", path="docs/b.md")

        handler.handle_failure("wf-1", first, error_code="EBUSY", detail="busy")
        handler.handle_failure("wf-1", second, error_code="ENOSPC", detail="full")

        entries = handler.audit.entries()
        assert len(entries) == 2
        assert entries[0].item_id == "a"
        assert entries[0].action == RecoveryAction.RETRY
        assert entries[0].retry_count == 1
        assert entries[1].path == "docs/b.md"
        assert entries[1].action == RecoveryAction.MANUAL_REVIEW

    def test_entries_survive_reload(self, handler, make_item, tmp_path):
        item = make_item("a")
        handler.handle_failure("wf-1", item, error_code="EBUSY")
        handler.handle_failure("wf-1", item, error_code="EBUSY")

        reloaded = AuditTrail.load(tmp_path / "audit.jsonl")

        assert len(reloaded) == 2
        assert [e.retry_count for e in reloaded.entries("a")] == [1, 2]
        assert reloaded.entries("b") == []

    def test_in_memory_trail(self, make_item):
        trail = AuditTrail()
        RetryHandler(audit=trail).handle_failure("wf-1", make_item("a"))

        assert trail.path is None
        assert len(trail) == 1
