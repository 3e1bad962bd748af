"""
Checkpoint Manager for State Persistence.

Writes immutable, integrity-checked snapshots of a workflow's state and work
items to <state_dir>/<workflow_id>/checkpoints/checkpoint-<seq>.json.

A write goes to a temporary file in the same directory, which is fsynced,
re-parsed and verified (structure, checksum, state invariants) before it is
renamed into place. A failed write removes the temporary file and leaves
existing checkpoints untouched. Old checkpoints are pruned only after a
successful write.
"""

import asyncio
import logging
import re
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from phasekeeper.models.base import CheckpointReason, utcnow
from phasekeeper.models.checkpoint import Checkpoint
from phasekeeper.models.state import WorkflowState
from phasekeeper.models.work_item import WorkItem
from phasekeeper.orchestrator.errors import CheckpointError, CorruptState, WorkflowError
from phasekeeper.utils.fileio import atomic_write_text

logger = logging.getLogger(__name__)

CHECKPOINT_FILE = re.compile(r"^checkpoint-(\d+)\.json$")


class CheckpointManager:
    """Creates, lists, prunes and loads checkpoints of one workflow.

    Usage:
        manager = CheckpointManager(store.checkpoint_dir(wf_id), wf_id, retention=5)
        checkpoint = manager.create(state, items, CheckpointReason.PHASE_COMPLETE)
        latest = manager.latest_valid()

    Attributes:
        workflow_id: Workflow the checkpoints belong to
        retention: Number of most recent checkpoints kept
    """

    def __init__(
        self,
        checkpoint_dir: str | Path,
        workflow_id: str,
        retention: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the checkpoint manager.

        Args:
            checkpoint_dir: Directory holding this workflow's checkpoints
            workflow_id: Workflow the checkpoints belong to
            retention: Number of most recent checkpoints to keep
            clock: Time source
        """
        if retention < 1:
            raise ValueError("retention must be at least 1")
        self._checkpoint_dir = Path(checkpoint_dir)
        self.workflow_id = workflow_id
        self.retention = retention
        self._clock = clock
        self._last_sequence = 0

        self._checkpoint_dir.mkdir(parents=True, exist_ok=True)

    @property
    def checkpoint_dir(self) -> Path:
        """Get checkpoint directory."""
        return self._checkpoint_dir

    def path_for(self, checkpoint_id: str) -> Path:
        """File path of a checkpoint id."""
        return self._checkpoint_dir / f"{checkpoint_id}.json"

    def create(
        self,
        state: WorkflowState,
        items: list[WorkItem],
        reason: CheckpointReason,
        progress_percentage: float = 0.0,
    ) -> Checkpoint:
        """Snapshot and durably write a checkpoint.

        Args:
            state: Current workflow state
            items: Current work items
            reason: What triggered the checkpoint
            progress_percentage: Aggregate progress at this moment

        Returns:
            The written checkpoint

        Raises:
            CorruptState: If the state violates its invariants
            CheckpointError: If the write or its verification failed
        """
        checkpoint = self._snapshot(state, items, reason, progress_percentage)
        self._write(checkpoint)
        return checkpoint

    async def create_async(
        self,
        state: WorkflowState,
        items: list[WorkItem],
        reason: CheckpointReason,
        progress_percentage: float = 0.0,
    ) -> Checkpoint:
        """Write a checkpoint from the event loop without blocking it.

        The snapshot is taken before the first suspension point. If the
        caller is cancelled mid-write, the write still completes before the
        cancellation propagates.
        """
        checkpoint = self._snapshot(state, items, reason, progress_percentage)
        write = asyncio.ensure_future(asyncio.to_thread(self._write, checkpoint))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            logger.debug(f"Cancelled during {checkpoint.checkpoint_id}; finishing write")
            await write
            raise
        return checkpoint

    def load(self, checkpoint_id: str) -> Checkpoint:
        """Load and verify a checkpoint by id.

        Raises:
            CheckpointError: If the checkpoint is missing or fails
                integrity checks
        """
        path = self.path_for(checkpoint_id)
        if not path.exists():
            raise CheckpointError(
                f"Checkpoint not found: {checkpoint_id}",
                checkpoint_id=checkpoint_id,
                workflow_id=self.workflow_id,
            )
        return self._read(path)

    def list_checkpoints(self) -> list[Checkpoint]:
        """Valid checkpoints, oldest first.

        Files that fail to load or verify are logged and skipped.
        """
        checkpoints = []
        for _, path in self._scan():
            try:
                checkpoints.append(self._read(path))
            except CheckpointError as e:
                logger.warning(f"Skipping checkpoint {path.name}: {e}")
        return checkpoints

    def latest_valid(self) -> Checkpoint | None:
        """Most recent checkpoint that passes integrity checks."""
        for _, path in reversed(self._scan()):
            try:
                return self._read(path)
            except CheckpointError as e:
                logger.warning(f"Skipping checkpoint {path.name}: {e}")
        return None

    def latest_in_phase(self, phase: str) -> Checkpoint | None:
        """Most recent valid checkpoint taken while a phase was current."""
        for checkpoint in reversed(self.list_checkpoints()):
            if checkpoint.state.current_phase == phase:
                return checkpoint
        return None

    def _snapshot(
        self,
        state: WorkflowState,
        items: list[WorkItem],
        reason: CheckpointReason,
        progress_percentage: float,
    ) -> Checkpoint:
        if state.workflow_id != self.workflow_id:
            raise CheckpointError(
                f"State of {state.workflow_id} cannot be checkpointed as {self.workflow_id}",
                workflow_id=self.workflow_id,
            )
        errors = state.invariant_errors()
        if errors:
            raise CorruptState("Refusing to checkpoint an inconsistent state", errors)

        sequence = self._next_sequence()
        return Checkpoint.build(
            state,
            items,
            sequence=sequence,
            reason=reason,
            progress_percentage=min(max(progress_percentage, 0.0), 100.0),
            created_at=self._clock(),
        )

    def _write(self, checkpoint: Checkpoint) -> None:
        path = self.path_for(checkpoint.checkpoint_id)
        try:
            atomic_write_text(
                path,
                checkpoint.model_dump_json(indent=2),
                verify=self._verifier(checkpoint),
            )
        except WorkflowError:
            raise
        except (OSError, ValueError) as e:
            raise CheckpointError(
                f"Failed to write {checkpoint.checkpoint_id}: {e}",
                checkpoint_id=checkpoint.checkpoint_id,
                workflow_id=self.workflow_id,
            ) from e

        logger.info(
            f"Checkpoint {checkpoint.checkpoint_id} written "
            f"({checkpoint.reason.value}, phase {checkpoint.state.current_phase}, "
            f"{checkpoint.progress_percentage:.1f}%)"
        )
        self._prune()

    def _verifier(self, expected: Checkpoint) -> Callable[[Path], None]:
        def verify(tmp_path: Path) -> None:
            written = Checkpoint.model_validate_json(tmp_path.read_text(encoding="utf-8"))
            errors = written.integrity_errors() + written.state.invariant_errors()
            if written.checksum != expected.checksum:
                errors.append("written checksum differs from snapshot")
            if errors:
                raise CheckpointError(
                    f"Verification of {expected.checkpoint_id} failed",
                    checkpoint_id=expected.checkpoint_id,
                    errors=errors,
                )

        return verify

    def _read(self, path: Path) -> Checkpoint:
        try:
            checkpoint = Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            raise CheckpointError(f"Unreadable checkpoint {path.name}: {e}") from e

        errors = checkpoint.integrity_errors()
        if checkpoint.workflow_id != self.workflow_id:
            errors.append(f"belongs to workflow {checkpoint.workflow_id}")
        if errors:
            raise CheckpointError(
                f"Checkpoint {path.name} failed integrity checks: {'; '.join(errors)}",
                errors=errors,
            )
        return checkpoint

    def _scan(self) -> list[tuple[int, Path]]:
        """Checkpoint files sorted by sequence."""
        found = []
        for path in self._checkpoint_dir.glob("checkpoint-*.json"):
            match = CHECKPOINT_FILE.match(path.name)
            if match:
                found.append((int(match.group(1)), path))
        found.sort()
        return found

    def _next_sequence(self) -> int:
        on_disk = self._scan()
        highest = on_disk[-1][0] if on_disk else 0
        self._last_sequence = max(self._last_sequence, highest) + 1
        return self._last_sequence

    def _prune(self) -> None:
        """Remove checkpoints beyond the retention limit, oldest first."""
        checkpoints = self._scan()
        excess = len(checkpoints) - self.retention
        for _, path in checkpoints[: max(excess, 0)]:
            try:
                path.unlink()
                logger.debug(f"Pruned checkpoint {path.name}")
            except OSError as e:
                logger.warning(f"Could not prune checkpoint {path.name}: {e}")
