"""
Configuration Data Models.

Defines all configuration schemas using Pydantic for validation
and type safety.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from tenacity import RetryCallState, wait_exponential, wait_fixed, wait_none
from tenacity.wait import wait_base


class LogLevel(str, Enum):
    """Supported logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class GateDefinition(BaseModel):
    """An approval gate between two phases.

    Attributes:
        name: Gate identifier (e.g. "post-research")
        after: Phase whose completion opens the gate
        timeout_minutes: How long one prompt waits before re-prompting
    """

    name: str = Field(..., min_length=1, description="Gate name")
    after: str = Field(..., min_length=1, description="Phase the gate follows")
    timeout_minutes: float = Field(
        default=30.0,
        gt=0.0,
        description="Minutes to wait per approval prompt",
    )

    @property
    def timeout_seconds(self) -> float:
        """Prompt timeout in seconds."""
        return self.timeout_minutes * 60.0


class WorkflowDefinition(BaseModel):
    """Phase sequence and gates for one workflow type.

    Attributes:
        phases: Ordered phase names, fixed when a workflow starts
        gates: Approval gates placed after specific phases
        required_keys: Configuration keys that must be supplied at start
    """

    phases: list[str] = Field(..., min_length=1, description="Ordered phases")
    gates: list[GateDefinition] = Field(default_factory=list, description="Approval gates")
    required_keys: list[str] = Field(
        default_factory=list,
        description="Configuration keys required at start",
    )

    @field_validator("phases")
    @classmethod
    def validate_phases(cls, v: list[str]) -> list[str]:
        """Phase names must be non-empty and unique."""
        if any(not p.strip() for p in v):
            raise ValueError("Phase names cannot be empty")
        if len(set(v)) != len(v):
            raise ValueError("Phase names must be unique")
        return v

    @model_validator(mode="after")
    def validate_gates(self) -> "WorkflowDefinition":
        """Every gate must follow a known phase, one gate per phase."""
        seen_names: set[str] = set()
        seen_phases: set[str] = set()
        for gate in self.gates:
            if gate.after not in self.phases:
                raise ValueError(f"Gate '{gate.name}' follows unknown phase '{gate.after}'")
            if gate.name in seen_names:
                raise ValueError(f"Duplicate gate name '{gate.name}'")
            if gate.after in seen_phases:
                raise ValueError(f"Phase '{gate.after}' has more than one gate")
            seen_names.add(gate.name)
            seen_phases.add(gate.after)
        return self

    def gate_after(self, phase: str) -> GateDefinition | None:
        """Get the gate that follows a phase, if any."""
        for gate in self.gates:
            if gate.after == phase:
                return gate
        return None

    def get_gate(self, name: str) -> GateDefinition | None:
        """Get a gate by name."""
        for gate in self.gates:
            if gate.name == name:
                return gate
        return None

    def missing_keys(self, configuration: dict[str, Any]) -> list[str]:
        """List required keys that are absent or empty in a configuration."""
        return [
            key
            for key in self.required_keys
            if configuration.get(key) is None or configuration.get(key) == ""
        ]


def default_workflows() -> dict[str, WorkflowDefinition]:
    """Built-in workflow definitions.

    Returns:
        Mapping of workflow type to definition
    """
    return {
        "new-project": WorkflowDefinition(
            phases=[
                "discovery",
                "research",
                "analysis",
                "requirements",
                "planning",
                "backlog",
                "scaffold",
                "sprint",
            ],
            gates=[
                GateDefinition(name="post-research", after="research", timeout_minutes=30),
                GateDefinition(name="post-requirements", after="requirements", timeout_minutes=60),
                GateDefinition(name="pre-implementation", after="scaffold", timeout_minutes=120),
            ],
            required_keys=["project_name"],
        ),
        "existing-project": WorkflowDefinition(
            phases=[
                "analyze",
                "discovery",
                "assessment",
                "improvement-selection",
                "planning",
                "backlog",
                "implementation",
            ],
            gates=[
                GateDefinition(name="post-analysis", after="analyze", timeout_minutes=45),
                GateDefinition(name="post-assessment", after="assessment", timeout_minutes=30),
                GateDefinition(
                    name="post-selection", after="improvement-selection", timeout_minutes=30
                ),
                GateDefinition(name="pre-implementation", after="backlog", timeout_minutes=120),
            ],
            required_keys=["project_name", "project_path"],
        ),
    }


class StorageConfig(BaseModel):
    """Where workflow records, checkpoints and audit logs live.

    Attributes:
        state_dir: Root directory for all persisted workflow data
        event_log: Append published events to <workflow>/events.jsonl
    """

    state_dir: str = Field(
        default="./.phasekeeper",
        description="Root directory for persisted state",
    )
    event_log: bool = Field(
        default=True,
        description="Write events to a JSONL log per workflow",
    )

    @field_validator("state_dir")
    @classmethod
    def validate_state_dir(cls, v: str) -> str:
        """Validate that state_dir is not empty."""
        if not v.strip():
            raise ValueError("State directory cannot be empty")
        return v


class CheckpointConfig(BaseModel):
    """Checkpoint trigger and retention settings.

    Attributes:
        interval_minutes: Wall-clock interval between timer checkpoints
        progress_step: Aggregate progress delta (percent) that triggers a checkpoint
        retention: Number of most recent checkpoints kept per workflow
    """

    interval_minutes: float = Field(default=30.0, gt=0.0)
    progress_step: float = Field(default=25.0, gt=0.0, le=100.0)
    retention: int = Field(default=5, ge=1)


class MonitorConfig(BaseModel):
    """Stuck-state detector settings.

    Attributes:
        enabled: Run the detector while a phase executes
        check_interval_seconds: Seconds between liveness checks
        stall_threshold_seconds: Idle time before a stall is reported
        no_progress_grace_seconds: Time in a phase with zero completed items
            before NoProgress is reported
    """

    enabled: bool = True
    check_interval_seconds: float = Field(default=300.0, gt=0.0)
    stall_threshold_seconds: float = Field(default=900.0, gt=0.0)
    no_progress_grace_seconds: float = Field(default=600.0, gt=0.0)


class CoordinatorConfig(BaseModel):
    """Parallel execution settings.

    Attributes:
        capacity: Named resource units available to in-flight items
        default_request: Units an item consumes when it does not say
        allowed_roots: Destination roots item paths must fall under
    """

    capacity: dict[str, int] = Field(default_factory=lambda: {"slots": 5})
    default_request: dict[str, int] = Field(default_factory=lambda: {"slots": 1})
    allowed_roots: list[str] = Field(default_factory=lambda: ["."])

    @field_validator("capacity", "default_request")
    @classmethod
    def validate_units(cls, v: dict[str, int]) -> dict[str, int]:
        """Resource units must be non-negative."""
        for name, amount in v.items():
            if amount < 0:
                raise ValueError(f"Resource '{name}' cannot be negative")
        return v

    @model_validator(mode="after")
    def validate_default_request(self) -> "CoordinatorConfig":
        """The default request must fit in the pool."""
        for name, amount in self.default_request.items():
            if amount > self.capacity.get(name, 0):
                raise ValueError(f"Default request for '{name}' exceeds pool capacity")
        return self


class RetryPolicyConfig(BaseModel):
    """Retry policy for one error class.

    Delayed retries follow a tenacity wait strategy: wait_fixed when
    backoff_factor is 1, otherwise wait_exponential. With immediate_first
    the first retry runs at once and the strategy starts with the second.

    Attributes:
        max_retries: Retries allowed before manual review
        base_delay_seconds: Delay of the first delayed retry
        backoff_factor: Multiplier applied per further retry
        immediate_first: Whether the first retry runs without delay
    """

    max_retries: int = Field(default=3, ge=0)
    base_delay_seconds: float = Field(default=1.0, ge=0.0)
    backoff_factor: float = Field(default=4.0, ge=1.0)
    immediate_first: bool = True

    def wait_strategy(self) -> wait_base:
        """Tenacity wait strategy for the delayed retries."""
        if self.backoff_factor == 1.0:
            return wait_fixed(self.base_delay_seconds)
        return wait_exponential(multiplier=self.base_delay_seconds, exp_base=self.backoff_factor)

    def delay_for(self, retry_number: int) -> float:
        """Seconds to wait before the given retry (1-based)."""
        if retry_number < 1:
            raise ValueError("retry_number is 1-based")
        delayed = retry_number - 1 if self.immediate_first else retry_number
        if delayed == 0:
            return float(wait_none()(_retry_state(1)))
        return float(self.wait_strategy()(_retry_state(delayed)))


def _retry_state(attempt_number: int) -> RetryCallState:
    state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
    state.attempt_number = attempt_number
    return state


class RetryConfig(BaseModel):
    """Retry policies per error class."""

    transient: RetryPolicyConfig = Field(default_factory=RetryPolicyConfig)
    permission: RetryPolicyConfig = Field(
        default_factory=lambda: RetryPolicyConfig(
            max_retries=2,
            base_delay_seconds=5.0,
            backoff_factor=1.0,
            immediate_first=False,
        )
    )
    permanent: RetryPolicyConfig = Field(
        default_factory=lambda: RetryPolicyConfig(max_retries=0)
    )


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level for the phasekeeper loggers
        format: Log record format
        file: Optional log file path
    """

    level: LogLevel = Field(default=LogLevel.INFO)
    format: str = Field(default="%(asctime)s %(levelname)s %(name)s: %(message)s")
    file: str | None = Field(default=None)


class PhasekeeperConfig(BaseModel):
    """Root configuration for the orchestration core.

    Attributes:
        storage: Persistence locations
        workflows: Workflow definitions keyed by workflow type
        checkpoints: Checkpoint triggers and retention
        monitor: Stuck-state detector settings
        coordinator: Parallel execution settings
        retry: Retry policies
        logging: Logging settings
        debug: Enable debug mode
    """

    storage: StorageConfig = Field(default_factory=StorageConfig)
    workflows: dict[str, WorkflowDefinition] = Field(default_factory=default_workflows)
    checkpoints: CheckpointConfig = Field(default_factory=CheckpointConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    debug: bool = Field(default=False)

    @field_validator("workflows")
    @classmethod
    def validate_workflows(
        cls, v: dict[str, WorkflowDefinition]
    ) -> dict[str, WorkflowDefinition]:
        """At least one workflow type must be defined."""
        if not v:
            raise ValueError("At least one workflow type must be defined")
        return v

    def get_workflow(self, workflow_type: str) -> WorkflowDefinition | None:
        """Get the definition for a workflow type."""
        return self.workflows.get(workflow_type)

    def to_yaml_dict(self) -> dict[str, Any]:
        """Convert to YAML-friendly dictionary.

        Returns:
            Dict suitable for YAML serialization
        """
        return self.model_dump(mode="json", exclude_none=True)
