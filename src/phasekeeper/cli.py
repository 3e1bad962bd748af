"""
Phasekeeper Command Line Interface.

A thin driver over WorkflowOrchestrator. Every command loads configuration,
acts on the active (or named) workflow and exits; work items are executed by
programs embedding the orchestrator, not by the CLI.
"""

import asyncio
import json
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from phasekeeper.config import (
    ConfigurationError,
    load_config,
    load_config_from_env,
    load_environment,
)
from phasekeeper.events.bus import EventBus
from phasekeeper.models.base import CheckpointReason
from phasekeeper.orchestrator import StatusReport, WorkflowError, WorkflowOrchestrator
from phasekeeper.utils.logging import configure_logging
from phasekeeper.version import __version__

console = Console()


def run_async(coro, bus: EventBus | None = None):
    """Run an async coroutine in a new event loop.

    With a bus, async event deliveries still in flight finish before the
    loop closes.
    """

    async def runner():
        try:
            return await coro
        finally:
            if bus is not None:
                await bus.drain()

    return asyncio.run(runner())


def _orchestrator(ctx: click.Context) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(ctx.obj["config"])


def _workflow_id(ctx: click.Context, workflow_id: str | None) -> str | None:
    return workflow_id or ctx.obj.get("workflow_id")


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/red] {error}")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="phasekeeper")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True),
    help="Path to configuration file",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Phasekeeper: phase-based workflow orchestration.

    Start, inspect, advance and recover multi-phase workflows with
    approval gates and durable checkpoints.
    """
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path) if config_path else load_config_from_env()
    except (ConfigurationError, FileNotFoundError) as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    configure_logging(config.logging, verbose=verbose or config.debug)
    ctx.obj["config"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["workflow_id"] = load_environment().workflow_id


@main.command()
@click.argument("workflow_type")
@click.option(
    "--set",
    "-s",
    "options",
    multiple=True,
    metavar="KEY=VALUE",
    help="Workflow configuration option (repeatable)",
)
@click.option("--id", "workflow_id", default=None, help="Explicit workflow id")
@click.pass_context
def start(
    ctx: click.Context, workflow_type: str, options: tuple[str, ...], workflow_id: str | None
) -> None:
    """Start a new workflow of WORKFLOW_TYPE."""
    configuration = {}
    for option in options:
        key, sep, value = option.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{option}'", param_hint="--set")
        configuration[key.strip()] = value.strip()

    orchestrator = _orchestrator(ctx)
    try:
        state = orchestrator.start(workflow_type, configuration, workflow_id)
    except WorkflowError as e:
        _fail(e)

    console.print(
        Panel(
            f"[bold]{state.workflow_id}[/bold]\n"
            f"Type: {state.workflow_type}\n"
            f"Phases: {' -> '.join(state.phases)}",
            title="[green]Workflow started[/green]",
        )
    )


@main.command()
@click.option("--workflow", "-w", "workflow_id", default=None, help="Workflow id")
@click.option("--json", "as_json", is_flag=True, help="Print status as JSON")
@click.pass_context
def status(ctx: click.Context, workflow_id: str | None, as_json: bool) -> None:
    """Show the status of a workflow."""
    orchestrator = _orchestrator(ctx)
    try:
        orchestrator.load(_workflow_id(ctx, workflow_id))
        report = orchestrator.status()
    except WorkflowError as e:
        _fail(e)

    if as_json:
        click.echo(json.dumps(report.model_dump(mode="json"), indent=2))
        return
    _display_status(report)


@main.command()
@click.option("--workflow", "-w", "workflow_id", default=None, help="Workflow id")
@click.pass_context
def resume(ctx: click.Context, workflow_id: str | None) -> None:
    """Resume an interrupted or cancelled workflow."""
    orchestrator = _orchestrator(ctx)
    try:
        state = orchestrator.resume(_workflow_id(ctx, workflow_id))
    except WorkflowError as e:
        _fail(e)
    console.print(
        f"[green]Resumed[/green] {state.workflow_id} at phase [bold]{state.current_phase}[/bold]"
    )


@main.command()
@click.option("--workflow", "-w", "workflow_id", default=None, help="Workflow id")
@click.option("--wait", is_flag=True, help="Block on an approval gate instead of returning")
@click.option("--max-prompts", type=int, default=None, help="Give up after N gate timeouts")
@click.pass_context
def advance(
    ctx: click.Context, workflow_id: str | None, wait: bool, max_prompts: int | None
) -> None:
    """Complete the current phase and move to the next."""
    orchestrator = _orchestrator(ctx)
    try:
        orchestrator.load(_workflow_id(ctx, workflow_id))
        previous = orchestrator.state.current_phase
        state = run_async(
            orchestrator.advance_phase(wait=wait, max_prompts=max_prompts), orchestrator.bus
        )
    except WorkflowError as e:
        _fail(e)

    if state.awaiting_approval:
        console.print(
            f"[yellow]Awaiting approval[/yellow] '{state.awaiting_approval}' "
            f"after phase {state.current_phase}"
        )
    elif not state.is_active:
        console.print(f"[green]Workflow {state.workflow_id} {state.status.value}[/green]")
    elif state.current_phase != previous:
        console.print(f"[green]✓[/green] {previous} -> [bold]{state.current_phase}[/bold]")
    else:
        console.print(f"[yellow]Still in phase[/yellow] {state.current_phase}")


def _resolve(ctx: click.Context, gate: str, approved: bool, notes, decided_by, workflow_id) -> None:
    orchestrator = _orchestrator(ctx)
    try:
        orchestrator.load(_workflow_id(ctx, workflow_id))
        record = orchestrator.resolve_gate(gate, approved, notes=notes, decided_by=decided_by)
    except WorkflowError as e:
        _fail(e)

    colour = "green" if approved else "yellow"
    console.print(f"[{colour}]Gate '{record.name}' {record.outcome.value}[/{colour}]")
    console.print(f"Current phase: [bold]{orchestrator.state.current_phase}[/bold]")


@main.command()
@click.argument("gate")
@click.option("--notes", "-n", default=None, help="Decision notes")
@click.option("--by", "decided_by", default=None, help="Who approved")
@click.option("--workflow", "-w", "workflow_id", default=None, help="Workflow id")
@click.pass_context
def approve(ctx: click.Context, gate: str, notes, decided_by, workflow_id) -> None:
    """Approve the approval GATE the workflow is waiting on."""
    _resolve(ctx, gate, True, notes, decided_by, workflow_id)


@main.command()
@click.argument("gate")
@click.option("--notes", "-n", default=None, help="Decision notes")
@click.option("--by", "decided_by", default=None, help="Who rejected")
@click.option("--workflow", "-w", "workflow_id", default=None, help="Workflow id")
@click.pass_context
def reject(ctx: click.Context, gate: str, notes, decided_by, workflow_id) -> None:
    """Reject GATE; the workflow stays in its current phase."""
    _resolve(ctx, gate, False, notes, decided_by, workflow_id)


@main.command()
@click.option("--workflow", "-w", "workflow_id", default=None, help="Workflow id")
@click.pass_context
def cancel(ctx: click.Context, workflow_id: str | None) -> None:
    """Abort a workflow (it can be resumed later)."""
    orchestrator = _orchestrator(ctx)
    try:
        orchestrator.load(_workflow_id(ctx, workflow_id))
        state = orchestrator.cancel()
    except WorkflowError as e:
        _fail(e)
    console.print(f"[yellow]Cancelled[/yellow] {state.workflow_id} in phase {state.current_phase}")


@main.command()
@click.argument("item_id")
@click.option("--workflow", "-w", "workflow_id", default=None, help="Workflow id")
@click.pass_context
def waive(ctx: click.Context, item_id: str, workflow_id: str | None) -> None:
    """Excuse ITEM_ID from blocking phase advancement."""
    orchestrator = _orchestrator(ctx)
    try:
        orchestrator.load(_workflow_id(ctx, workflow_id))
        item = orchestrator.waive_item(item_id)
    except WorkflowError as e:
        _fail(e)
    console.print(f"[green]Waived[/green] {item.item_id} ({item.stage.value})")


@main.command()
@click.argument("phase")
@click.option("--workflow", "-w", "workflow_id", default=None, help="Workflow id")
@click.pass_context
def rollback(ctx: click.Context, phase: str, workflow_id: str | None) -> None:
    """Restore the latest checkpoint taken in PHASE."""
    orchestrator = _orchestrator(ctx)
    try:
        orchestrator.load(_workflow_id(ctx, workflow_id))
        state = orchestrator.rollback(phase)
    except WorkflowError as e:
        _fail(e)
    console.print(f"[green]Rolled back[/green] {state.workflow_id} to phase {state.current_phase}")


@main.group()
def checkpoints() -> None:
    """Inspect and restore checkpoints."""


@checkpoints.command("list")
@click.option("--workflow", "-w", "workflow_id", default=None, help="Workflow id")
@click.pass_context
def checkpoints_list(ctx: click.Context, workflow_id: str | None) -> None:
    """List valid checkpoints, oldest first."""
    orchestrator = _orchestrator(ctx)
    try:
        state = orchestrator.load(_workflow_id(ctx, workflow_id))
        found = orchestrator.list_checkpoints()
    except WorkflowError as e:
        _fail(e)

    if not found:
        console.print("[dim]No checkpoints found.[/dim]")
        return

    table = Table(title=f"Checkpoints of {state.workflow_id}", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Reason")
    table.add_column("Phase")
    table.add_column("Progress", justify="right")
    table.add_column("Created")
    for checkpoint in found:
        table.add_row(
            checkpoint.checkpoint_id,
            checkpoint.reason.value,
            checkpoint.state.current_phase,
            f"{checkpoint.progress_percentage:.1f}%",
            checkpoint.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@checkpoints.command("create")
@click.option("--workflow", "-w", "workflow_id", default=None, help="Workflow id")
@click.pass_context
def checkpoints_create(ctx: click.Context, workflow_id: str | None) -> None:
    """Take a manual checkpoint."""
    orchestrator = _orchestrator(ctx)
    try:
        orchestrator.load(_workflow_id(ctx, workflow_id))
        checkpoint = orchestrator.create_checkpoint(CheckpointReason.MANUAL)
    except WorkflowError as e:
        _fail(e)
    console.print(f"[green]Created[/green] {checkpoint.checkpoint_id}")


@checkpoints.command("restore")
@click.argument("checkpoint_id")
@click.option("--workflow", "-w", "workflow_id", default=None, help="Workflow id")
@click.pass_context
def checkpoints_restore(ctx: click.Context, checkpoint_id: str, workflow_id: str | None) -> None:
    """Restore CHECKPOINT_ID as the workflow's current state."""
    orchestrator = _orchestrator(ctx)
    try:
        orchestrator.load(_workflow_id(ctx, workflow_id))
        state = orchestrator.restore_checkpoint(checkpoint_id)
    except WorkflowError as e:
        _fail(e)
    console.print(
        f"[green]Restored[/green] {checkpoint_id}; current phase {state.current_phase}"
    )


@main.command()
@click.option("--workflow", "-w", "workflow_id", default=None, help="Workflow id")
@click.option("--item", "item_id", default=None, help="Only entries for this item")
@click.pass_context
def audit(ctx: click.Context, workflow_id: str | None, item_id: str | None) -> None:
    """Show recovery decisions from the audit trail."""
    orchestrator = _orchestrator(ctx)
    try:
        orchestrator.load(_workflow_id(ctx, workflow_id))
        entries = orchestrator.audit_entries(item_id)
    except WorkflowError as e:
        _fail(e)

    if not entries:
        console.print("[dim]No recovery decisions recorded.[/dim]")
        return

    table = Table(title="Audit Trail", show_header=True)
    table.add_column("Time")
    table.add_column("Item", style="cyan")
    table.add_column("Class")
    table.add_column("Code")
    table.add_column("Action")
    table.add_column("Retries", justify="right")
    table.add_column("Detail")
    for entry in entries:
        table.add_row(
            entry.timestamp.strftime("%H:%M:%S"),
            entry.item_id,
            entry.error_class.value,
            entry.error_code or "-",
            entry.action.value + (" (risky)" if entry.risky else ""),
            str(entry.retry_count),
            entry.detail,
        )
    console.print(table)


def _display_status(report: StatusReport) -> None:
    """Display a workflow status report."""
    console.print(
        Panel(
            f"[bold]{report.workflow_id}[/bold] ({report.workflow_type}) - {report.status.value}",
            title="Workflow Status",
        )
    )

    phases = Table(show_header=True, box=None)
    phases.add_column("Phase")
    phases.add_column("State")
    for index, phase in enumerate(report.phases):
        if phase in report.phases_completed:
            marker = "[green]done[/green]"
        elif index == report.phase_index:
            marker = "[cyan]current[/cyan]"
        else:
            marker = "[dim]pending[/dim]"
        phases.add_row(phase, marker)
    console.print(phases)
    console.print()

    summary = Table(show_header=False, box=None)
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value")
    summary.add_row("Progress", f"{report.progress_percentage:.1f}%")
    summary.add_row("Phase progress", f"{report.phase_progress_percentage:.1f}%")
    summary.add_row("Awaiting approval", report.awaiting_approval or "-")
    summary.add_row("Outstanding items", str(len(report.outstanding)))
    summary.add_row("Manual review", ", ".join(report.manual_review) or "-")
    summary.add_row("Last checkpoint", report.last_checkpoint or "-")
    console.print(summary)


if __name__ == "__main__":
    main()
