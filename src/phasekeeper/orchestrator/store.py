"""
Current-state record persistence.

Each workflow owns a directory under the state root:

    <state_dir>/<workflow_id>/state.json        current record
    <state_dir>/<workflow_id>/checkpoints/      checkpoint files
    <state_dir>/<workflow_id>/audit.jsonl       recovery audit trail
    <state_dir>/<workflow_id>/events.jsonl      event log (optional)

Records carry a format_version. Newer versions are rejected; version-0
records from the unversioned legacy layout are migrated on load.
"""

import json
import logging
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from phasekeeper.config.models import WorkflowDefinition, default_workflows
from phasekeeper.models.base import FORMAT_VERSION, GateOutcome, WorkflowStatus, utcnow
from phasekeeper.models.state import WorkflowRecord, WorkflowState
from phasekeeper.models.work_item import WorkItem
from phasekeeper.orchestrator.errors import CorruptState, WorkflowNotFound
from phasekeeper.utils.fileio import atomic_write_text

logger = logging.getLogger(__name__)

# Legacy status strings and what they mean now
LEGACY_STATUS = {
    "active": WorkflowStatus.ACTIVE,
    "in_progress": WorkflowStatus.ACTIVE,
    "running": WorkflowStatus.ACTIVE,
    "paused": WorkflowStatus.ACTIVE,
    "completed": WorkflowStatus.COMPLETED,
    "aborted": WorkflowStatus.ABORTED,
    "cancelled": WorkflowStatus.ABORTED,
    "failed": WorkflowStatus.ABORTED,
}

LEGACY_DROPPED_KEYS = ("phase_details", "can_resume", "checkpoints", "approval_gates", "phase")


class StateStore:
    """Reads and writes current-state records.

    Usage:
        store = StateStore("./.phasekeeper")
        store.save(state, items)
        record = store.load(state.workflow_id)
    """

    STATE_FILE = "state.json"
    CHECKPOINT_DIR = "checkpoints"
    AUDIT_FILE = "audit.jsonl"

    def __init__(
        self,
        state_dir: str | Path,
        workflows: Mapping[str, WorkflowDefinition] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            state_dir: Root directory for all workflows
            workflows: Workflow definitions, used to migrate legacy records
        """
        self._state_dir = Path(state_dir)
        self._workflows = dict(workflows) if workflows is not None else default_workflows()

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def workflow_dir(self, workflow_id: str) -> Path:
        return self._state_dir / workflow_id

    def state_path(self, workflow_id: str) -> Path:
        return self.workflow_dir(workflow_id) / self.STATE_FILE

    def checkpoint_dir(self, workflow_id: str) -> Path:
        return self.workflow_dir(workflow_id) / self.CHECKPOINT_DIR

    def audit_path(self, workflow_id: str) -> Path:
        return self.workflow_dir(workflow_id) / self.AUDIT_FILE

    def exists(self, workflow_id: str) -> bool:
        """Whether a current-state record exists."""
        return self.state_path(workflow_id).exists()

    def save(
        self,
        state: WorkflowState,
        items: list[WorkItem],
        saved_at: datetime | None = None,
    ) -> WorkflowRecord:
        """Atomically replace a workflow's current-state record.

        Raises:
            CorruptState: If the state violates its invariants
        """
        errors = state.invariant_errors()
        if errors:
            raise CorruptState(f"Refusing to save workflow {state.workflow_id}", errors)

        record = WorkflowRecord(state=state, items=items, saved_at=saved_at or utcnow())
        path = self.state_path(state.workflow_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_text(path, record.model_dump_json(indent=2))
        logger.debug(f"Saved {state.workflow_id} ({state.status.value}, {state.current_phase})")
        return record

    def load(self, workflow_id: str) -> WorkflowRecord:
        """Load, migrate and validate a current-state record.

        Raises:
            WorkflowNotFound: If no record exists
            CorruptState: If the record cannot be parsed or has an unsupported
                version; invariants are checked by the caller after
                re-deriving phase_index
        """
        path = self.state_path(workflow_id)
        if not path.exists():
            raise WorkflowNotFound(workflow_id)

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptState(f"State record of {workflow_id} is not valid JSON", [str(e)]) from e
        if not isinstance(data, dict):
            raise CorruptState(f"State record of {workflow_id} is not an object")

        data = self.migrate(data)
        try:
            record = WorkflowRecord.model_validate(data)
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise CorruptState(f"State record of {workflow_id} failed validation", errors) from e

        if record.state.workflow_id != workflow_id:
            raise CorruptState(
                f"State record in {workflow_id} belongs to {record.state.workflow_id}"
            )
        return record

    def migrate(self, data: dict[str, Any]) -> dict[str, Any]:
        """Bring a raw record up to the current format version.

        Raises:
            CorruptState: If the version is newer than supported or a legacy
                record cannot be mapped
        """
        version = data.get("format_version", 0)
        if not isinstance(version, int) or version > FORMAT_VERSION:
            raise CorruptState(f"Unsupported format_version {version!r}")
        if version == 0:
            data = self._migrate_v0(data)
        return data

    def list_workflows(self) -> list[WorkflowState]:
        """States of all loadable workflows, oldest first."""
        states = []
        if not self._state_dir.exists():
            return states
        for path in sorted(self._state_dir.glob(f"*/{self.STATE_FILE}")):
            workflow_id = path.parent.name
            try:
                states.append(self.load(workflow_id).state)
            except CorruptState as e:
                logger.warning(f"Skipping unreadable workflow {workflow_id}: {e}")
        states.sort(key=lambda s: s.started_at)
        return states

    def find_active(self) -> WorkflowState | None:
        """The most recently started active workflow, if any."""
        active = [s for s in self.list_workflows() if s.is_active]
        return active[-1] if active else None

    def _migrate_v0(self, data: dict[str, Any]) -> dict[str, Any]:
        """Map a flat legacy state file onto a versioned record.

        Legacy files hold the state at the top level, have no phase list
        (it comes from the workflow definition) and keep gate decisions in
        approval_gates as {approved, notes, approved_by, approved_at}.
        """
        if "state" in data:
            state = dict(data["state"])
            items = data.get("items", [])
        else:
            state = dict(data)
            items = []

        workflow_type = state.get("workflow_type")
        definition = self._workflows.get(workflow_type)
        if definition is None:
            raise CorruptState(f"Legacy record has unknown workflow type {workflow_type!r}")

        phases = state.get("phases") or list(definition.phases)
        gates: dict[str, dict[str, Any]] = {}
        for name, legacy in (state.get("approval_gates") or {}).items():
            gate_def = definition.get_gate(name)
            if gate_def is None:
                logger.warning(f"Dropping legacy gate '{name}' unknown to {workflow_type}")
                continue
            approved = bool(legacy.get("approved")) if isinstance(legacy, dict) else bool(legacy)
            gates[name] = {
                "name": name,
                "after_phase": gate_def.after,
                "outcome": GateOutcome.APPROVED if approved else GateOutcome.PENDING,
                "resolved_at": legacy.get("approved_at") if isinstance(legacy, dict) else None,
                "notes": legacy.get("notes") if isinstance(legacy, dict) else None,
                "decided_by": legacy.get("approved_by") if isinstance(legacy, dict) else None,
            }

        awaiting = state.get("awaiting_approval")
        if awaiting and awaiting not in gates:
            gate_def = definition.get_gate(awaiting)
            if gate_def is not None:
                gates[awaiting] = {"name": awaiting, "after_phase": gate_def.after}

        status = LEGACY_STATUS.get(str(state.get("status", "active")).lower())
        if status is None:
            raise CorruptState(f"Legacy record has unknown status {state.get('status')!r}")

        migrated = {k: v for k, v in state.items() if k not in LEGACY_DROPPED_KEYS}
        migrated.update(
            format_version=FORMAT_VERSION,
            phases=phases,
            status=status,
            gates=gates,
            awaiting_approval=awaiting or None,
        )
        if "updated_at" not in migrated and "last_updated" in migrated:
            migrated["updated_at"] = migrated.pop("last_updated")
        migrated.pop("last_updated", None)

        logger.info(
            f"Migrated legacy record of {state.get('workflow_id')} to version {FORMAT_VERSION}"
        )
        return {"format_version": FORMAT_VERSION, "state": migrated, "items": items}
