"""
Tests for the current-state record store.

Tests cover:
- Saving and loading records
- Rejecting unreadable, foreign and future-version records
- Migrating legacy unversioned records
- Listing workflows and finding the active one
"""

import json
from datetime import UTC, datetime

import pytest

from phasekeeper.models import FORMAT_VERSION, GateOutcome, WorkflowState, WorkflowStatus
from phasekeeper.orchestrator import CorruptState, StateStore, WorkflowNotFound

PHASES = ["discovery", "research", "planning"]


def make_state(workflow_id: str = "wf-1", **overrides) -> WorkflowState:
    fields = {
        "workflow_id": workflow_id,
        "workflow_type": "new-project",
        "phases": list(PHASES),
        "current_phase": "discovery",
        "phase_index": 0,
    }
    fields.update(overrides)
    return WorkflowState(**fields)


@pytest.fixture
def store(state_dir, config) -> StateStore:
    return StateStore(state_dir, config.workflows)


def write_raw(store: StateStore, workflow_id: str, data) -> None:
    path = store.state_path(workflow_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(data if isinstance(data, str) else json.dumps(data))


# =============================================================================
# Save and load
# =============================================================================


class TestSaveLoad:
    """Tests for StateStore.save() and load()."""

    def test_round_trip(self, store, make_item):
        state = make_state(configuration={"project_name": "demo"})
        saved_at = datetime(2026, 1, 5, 10, 0, tzinfo=UTC)

        store.save(state, [make_item("a")], saved_at=saved_at)
        record = store.load("wf-1")

        assert record.state == state
        assert [i.item_id for i in record.items] == ["a"]
        assert record.saved_at == saved_at
        assert record.format_version == FORMAT_VERSION
        assert store.exists("wf-1")

    def test_layout(self, store, state_dir):
        store.save(make_state(), [])

        assert (state_dir / "wf-1" / "state.json").exists()
        assert store.checkpoint_dir("wf-1") == state_dir / "wf-1" / "checkpoints"
        assert store.audit_path("wf-1") == state_dir / "wf-1" / "audit.jsonl"

    def test_missing_record(self, store):
        with pytest.raises(WorkflowNotFound):
            store.load("nope")

    def test_inconsistent_state_is_not_saved(self, store):
        with pytest.raises(CorruptState):
            store.save(make_state(phase_index=1), [])

        assert not store.exists("wf-1")

    def test_invalid_json(self, store):
        write_raw(store, "wf-1", "{not json")

        with pytest.raises(CorruptState, match="not valid JSON"):
            store.load("wf-1")

    def test_undecodable_bytes(self, store):
        path = store.state_path("wf-1")
        path.parent.mkdir(parents=True)
        path.write_bytes(b"\xff\xfe\x00garbage")

        with pytest.raises(CorruptState, match="not valid JSON"):
            store.load("wf-1")
        assert store.list_workflows() == []

    def test_non_object(self, store):
        write_raw(store, "wf-1", [1, 2, 3])

        with pytest.raises(CorruptState, match="not an object"):
            store.load("wf-1")

    def test_newer_version_rejected(self, store):
        store.save(make_state(), [])
        data = json.loads(store.state_path("wf-1").read_text())
        data["format_version"] = FORMAT_VERSION + 1
        write_raw(store, "wf-1", data)

        with pytest.raises(CorruptState, match="Unsupported format_version"):
            store.load("wf-1")

    def test_schema_violation(self, store):
        store.save(make_state(), [])
        data = json.loads(store.state_path("wf-1").read_text())
        data["state"]["status"] = "exploded"
        write_raw(store, "wf-1", data)

        with pytest.raises(CorruptState) as exc_info:
            store.load("wf-1")

        assert any("status" in e for e in exc_info.value.errors)

    def test_record_in_wrong_directory(self, store):
        store.save(make_state(), [])
        write_raw(store, "wf-2", store.state_path("wf-1").read_text())

        with pytest.raises(CorruptState, match="belongs to wf-1"):
            store.load("wf-2")


# =============================================================================
# Legacy migration
# =============================================================================


class TestLegacyMigration:
    """Tests for version-0 records."""

    @pytest.fixture
    def legacy(self) -> dict:
        return {
            "workflow_id": "legacy-1",
            "workflow_type": "new-project",
            "status": "in_progress",
            "current_phase": "research",
            "phase_index": 1,
            "phases_completed": ["discovery"],
            "configuration": {"project_name": "demo"},
            "approval_gates": {
                "post-research": {
                    "approved": True,
                    "notes": "looks good",
                    "approved_by": "lead",
                    "approved_at": "2025-11-02T14:00:00+00:00",
                },
                "removed-gate": {"approved": False},
            },
            "phase_details": {"discovery": {"status": "completed"}},
            "can_resume": True,
            "started_at": "2025-11-01T09:00:00+00:00",
            "last_updated": "2025-11-02T15:30:00+00:00",
        }

    def test_flat_record_is_migrated(self, store, legacy):
        write_raw(store, "legacy-1", legacy)

        record = store.load("legacy-1")

        state = record.state
        assert state.format_version == FORMAT_VERSION
        assert state.status == WorkflowStatus.ACTIVE
        assert state.phases == PHASES
        assert state.invariant_errors() == []
        assert state.updated_at == datetime(2025, 11, 2, 15, 30, tzinfo=UTC)
        assert record.items == []

    def test_gate_decisions_are_kept(self, store, legacy):
        write_raw(store, "legacy-1", legacy)

        gates = store.load("legacy-1").state.gates

        assert list(gates) == ["post-research"]
        gate = gates["post-research"]
        assert gate.outcome == GateOutcome.APPROVED
        assert gate.after_phase == "research"
        assert gate.decided_by == "lead"
        assert gate.notes == "looks good"

    def test_migrated_record_can_be_saved(self, store, legacy):
        write_raw(store, "legacy-1", legacy)
        record = store.load("legacy-1")

        store.save(record.state, record.items)

        assert json.loads(store.state_path("legacy-1").read_text())["format_version"] == 1

    def test_unknown_legacy_status(self, store, legacy):
        legacy["status"] = "exploded"
        write_raw(store, "legacy-1", legacy)

        with pytest.raises(CorruptState, match="unknown status"):
            store.load("legacy-1")

    def test_unknown_legacy_type(self, store, legacy):
        legacy["workflow_type"] = "mystery"
        write_raw(store, "legacy-1", legacy)

        with pytest.raises(CorruptState, match="unknown workflow type"):
            store.load("legacy-1")


# =============================================================================
# Listing
# =============================================================================


class TestListing:
    """Tests for list_workflows() and find_active()."""

    def test_empty_state_dir(self, tmp_path):
        store = StateStore(tmp_path / "missing")

        assert store.list_workflows() == []
        assert store.find_active() is None

    def test_lists_oldest_first_and_skips_corrupt(self, store):
        store.save(make_state("wf-b", started_at=datetime(2026, 1, 2, tzinfo=UTC)), [])
        store.save(make_state("wf-a", started_at=datetime(2026, 1, 3, tzinfo=UTC)), [])
        write_raw(store, "wf-broken", "garbage")

        ids = [s.workflow_id for s in store.list_workflows()]

        assert ids == ["wf-b", "wf-a"]

    def test_find_active_ignores_finished(self, store):
        store.save(make_state("wf-old", started_at=datetime(2026, 1, 1, tzinfo=UTC)), [])
        store.save(
            make_state(
                "wf-done",
                started_at=datetime(2026, 1, 4, tzinfo=UTC),
                status=WorkflowStatus.COMPLETED,
                current_phase="planning",
                phase_index=2,
                phases_completed=list(PHASES),
            ),
            [],
        )

        active = store.find_active()

        assert active is not None
        assert active.workflow_id == "wf-old"
