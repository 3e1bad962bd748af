"""
Workflow error taxonomy.

Every error the orchestration core raises derives from WorkflowError and
carries structured context for callers that report results as data.
Item-level failures never surface as exceptions; they are absorbed into the
retry policy or manual review.
"""

from typing import Any


class WorkflowError(Exception):
    """Base class for orchestration errors.

    Attributes:
        code: Stable machine-readable error code
        context: Structured details about the failure
    """

    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Structured form of the error."""
        return {"error": self.code, "message": str(self), **self.context}


class InvalidConfiguration(WorkflowError):
    """Unknown workflow type or missing required configuration."""

    code = "INVALID_CONFIGURATION"

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        super().__init__(message, missing=list(missing or []))
        self.missing = list(missing or [])


class AlreadyActive(WorkflowError):
    """A workflow is already running."""

    code = "ALREADY_ACTIVE"

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} is already active", workflow_id=workflow_id)
        self.workflow_id = workflow_id


class NoActiveWorkflow(WorkflowError):
    """An operation needs a loaded, running workflow."""

    code = "NO_ACTIVE_WORKFLOW"


class WorkflowNotFound(WorkflowError):
    """No persisted record or checkpoint exists for a workflow."""

    code = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}", workflow_id=workflow_id)
        self.workflow_id = workflow_id


class InvalidTransition(WorkflowError):
    """The requested transition is not allowed from the current state."""

    code = "INVALID_TRANSITION"


class PhaseIncomplete(WorkflowError):
    """The current phase still has unsettled work items."""

    code = "PHASE_INCOMPLETE"

    def __init__(self, phase: str, outstanding: list[str]) -> None:
        super().__init__(
            f"Phase '{phase}' has {len(outstanding)} outstanding items: "
            f"{', '.join(outstanding)}",
            phase=phase,
            outstanding=list(outstanding),
        )
        self.phase = phase
        self.outstanding = list(outstanding)


class CorruptState(WorkflowError):
    """A persisted state failed validation."""

    code = "CORRUPT_STATE"

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message, errors=list(errors or []))
        self.errors = list(errors or [])

    def __str__(self) -> str:
        msg = super().__str__()
        if self.errors:
            msg = f"{msg}: " + "; ".join(self.errors)
        return msg


class DependencyCycle(WorkflowError):
    """The work item dependency graph contains a cycle."""

    code = "DEPENDENCY_CYCLE"

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}", cycle=list(cycle))
        self.cycle = list(cycle)


class UnknownDependency(WorkflowError):
    """A work item depends on an item that does not exist."""

    code = "UNKNOWN_DEPENDENCY"

    def __init__(self, item_id: str, dependency: str) -> None:
        super().__init__(
            f"Item '{item_id}' depends on unknown item '{dependency}'",
            item_id=item_id,
            dependency=dependency,
        )
        self.item_id = item_id
        self.dependency = dependency


class GateTimeout(WorkflowError):
    """An approval gate was not resolved in time. Recoverable."""

    code = "GATE_TIMEOUT"

    def __init__(self, gate: str, prompts: int) -> None:
        super().__init__(
            f"Approval gate '{gate}' unresolved after {prompts} prompts",
            gate=gate,
            prompts=prompts,
        )
        self.gate = gate
        self.prompts = prompts


class StageRegression(WorkflowError):
    """A work item was moved to an illegal stage."""

    code = "STAGE_REGRESSION"

    def __init__(self, item_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Item '{item_id}' cannot move from {current} to {requested}",
            item_id=item_id,
            current=current,
            requested=requested,
        )
        self.item_id = item_id


class InvalidPath(WorkflowError):
    """A work item path is unsafe or outside the allowed roots."""

    code = "INVALID_PATH"

    def __init__(self, path: str, reason: str, error_code: str = "INVALID_PATH") -> None:
        super().__init__(f"Invalid path '{path}': {reason}", path=path, error_code=error_code)
        self.path = path
        self.reason = reason
        self.error_code = error_code


class CheckpointError(WorkflowError):
    """A checkpoint could not be written, found or verified."""

    code = "CHECKPOINT_ERROR"


class ItemNotFound(WorkflowError):
    """No tracked work item has the given id."""

    code = "ITEM_NOT_FOUND"

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Unknown work item: {item_id}", item_id=item_id)
        self.item_id = item_id
