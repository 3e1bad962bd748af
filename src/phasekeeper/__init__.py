"""
Phasekeeper: phase-based workflow orchestration core.

Drives a multi-phase document/task generation process across many
independent workers with durable checkpoints, stuck-state detection,
bounded parallel execution and failure recovery.

Key Features:
- Strictly forward phase state machine with approval gates
- Atomic, integrity-checked checkpoints with retention
- Conflict-free execution waves bounded by a resource pool
- Classified retry policies with an append-only audit trail

Example:
    from phasekeeper import WorkflowOrchestrator

    orchestrator = WorkflowOrchestrator()
    orchestrator.start("new-project", {"project_name": "demo"})
    await orchestrator.run_phase(worker, items)
    await orchestrator.advance_phase()
"""

from phasekeeper.orchestrator import WorkflowOrchestrator
from phasekeeper.version import __version__

__all__ = [
    "WorkflowOrchestrator",
    "__version__",
]
