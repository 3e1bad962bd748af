"""Tests for workflow state and work item models."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from phasekeeper.models import (
    MAX_STAGE_WEIGHT,
    GateRecord,
    ItemStage,
    WorkflowRecord,
    WorkflowState,
    WorkflowStatus,
    WorkItem,
    new_workflow_id,
)

PHASES = ["discovery", "research", "planning"]


def make_state(**overrides) -> WorkflowState:
    fields = {
        "workflow_id": "wf-1",
        "workflow_type": "new-project",
        "phases": list(PHASES),
        "current_phase": "discovery",
        "phase_index": 0,
    }
    fields.update(overrides)
    return WorkflowState(**fields)


# =============================================================================
# WorkflowState invariants
# =============================================================================


class TestWorkflowStateInvariants:
    """Tests for WorkflowState.invariant_errors()."""

    def test_fresh_state_is_consistent(self):
        state = make_state()

        assert state.invariant_errors() == []
        assert state.is_active
        assert state.next_phase == "research"

    def test_mid_workflow_state_is_consistent(self):
        state = make_state(current_phase="research", phase_index=1, phases_completed=["discovery"])

        assert state.invariant_errors() == []

    def test_current_phase_outside_sequence(self):
        errors = make_state(current_phase="deploy").invariant_errors()

        assert any("not in the phase sequence" in e for e in errors)

    def test_phase_index_mismatch(self):
        errors = make_state(phase_index=2).invariant_errors()

        assert any("phase_index 2" in e for e in errors)

    def test_completed_phases_must_be_prefix(self):
        state = make_state(current_phase="research", phase_index=1, phases_completed=["planning"])

        assert any("prefix" in e for e in state.invariant_errors())

    def test_active_state_needs_matching_completed_count(self):
        state = make_state(current_phase="research", phase_index=1)

        assert any("has 0 completed phases" in e for e in state.invariant_errors())

    def test_completed_status_needs_all_phases(self):
        state = make_state(
            status=WorkflowStatus.COMPLETED,
            current_phase="planning",
            phase_index=2,
            phases_completed=["discovery", "research"],
        )

        assert "completed workflow has unfinished phases" in state.invariant_errors()

    def test_completed_status_consistent(self):
        state = make_state(
            status=WorkflowStatus.COMPLETED,
            current_phase="planning",
            phase_index=2,
            phases_completed=list(PHASES),
        )

        assert state.invariant_errors() == []
        assert state.next_phase is None

    def test_awaiting_unknown_gate(self):
        errors = make_state(awaiting_approval="post-research").invariant_errors()

        assert any("unknown gate" in e for e in errors)

    def test_awaiting_gate_of_other_phase(self):
        state = make_state(
            awaiting_approval="post-research",
            gates={"post-research": GateRecord(name="post-research", after_phase="research")},
        )

        assert any("follows 'research'" in e for e in state.invariant_errors())

    def test_empty_phase_sequence(self):
        state = make_state(phases=[])

        assert state.invariant_errors() == ["phase sequence is empty"]

    def test_phase_index_cannot_be_negative(self):
        with pytest.raises(ValidationError):
            make_state(phase_index=-1)


class TestWorkflowIds:
    """Tests for workflow identifier generation."""

    def test_id_carries_date(self):
        workflow_id = new_workflow_id(datetime(2026, 3, 14, tzinfo=UTC))

        assert workflow_id.startswith("workflow-2026-03-14-")
        assert len(workflow_id.rsplit("-", 1)[-1]) == 8

    def test_ids_are_unique(self):
        assert new_workflow_id() != new_workflow_id()


class TestWorkflowRecord:
    """Tests for the persisted current-state record."""

    def test_json_round_trip_keeps_items(self):
        record = WorkflowRecord(
            state=make_state(),
            items=[WorkItem(item_id="a", path="docs/a.md", owning_phase="discovery")],
        )

        restored = WorkflowRecord.model_validate_json(record.model_dump_json())

        assert restored.state == record.state
        assert restored.items[0].item_id == "a"
        assert restored.saved_at == record.saved_at


# =============================================================================
# Work items and stages
# =============================================================================


class TestWorkItem:
    """Tests for the WorkItem model."""

    def test_defaults(self):
        item = WorkItem(item_id="a", path="docs/a.md", owning_phase="discovery")

        assert item.stage == ItemStage.QUEUED
        assert item.high_water_stage == ItemStage.QUEUED
        assert item.retry_count == 0
        assert item.resources is None
        assert not item.is_terminal
        assert not item.is_settled

    def test_blank_id_rejected(self):
        with pytest.raises(ValidationError, match="empty"):
            WorkItem(item_id=" ", path="docs/a.md", owning_phase="discovery")

    def test_dependencies_deduplicated(self):
        item = WorkItem(
            item_id="c", path="c.md", owning_phase="discovery", depends_on=["a", "b", "a"]
        )

        assert item.depends_on == ["a", "b"]

    def test_waived_item_is_settled(self):
        item = WorkItem(
            item_id="a",
            path="a.md",
            owning_phase="discovery",
            stage=ItemStage.MANUAL_REVIEW,
            waived=True,
        )

        assert item.is_terminal
        assert item.is_settled


class TestItemStage:
    """Tests for stage weights and terminality."""

    def test_weights_follow_forward_path(self):
        assert ItemStage.QUEUED.weight == 0
        assert ItemStage.VALIDATING.weight == 1
        assert ItemStage.VERIFYING.weight == 4
        assert ItemStage.COMPLETED.weight == MAX_STAGE_WEIGHT == 5

    def test_off_path_stages_have_no_weight(self):
        assert ItemStage.FAILED.weight is None
        assert ItemStage.MANUAL_REVIEW.weight is None

    def test_terminal_stages(self):
        terminal = {stage for stage in ItemStage if stage.is_terminal}

        assert terminal == {ItemStage.COMPLETED, ItemStage.MANUAL_REVIEW}
