"""Tests for the phasekeeper command line interface."""

import asyncio
import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner
from rich.console import Console

import phasekeeper.cli as cli
from phasekeeper.config import CONFIG_ENV_VAR, ENV_VAR_OVERRIDES, reset_config, reset_environment
from phasekeeper.events import EventBus
from phasekeeper.models import EventCategory, WorkflowEvent
from phasekeeper.version import __version__


@pytest.fixture(autouse=True)
def isolated_cli(monkeypatch):
    """Keep the CLI away from real environment, logging setup and terminal width."""
    import phasekeeper.config.environment as env_module

    reset_config()
    reset_environment()
    for var in [*ENV_VAR_OVERRIDES, CONFIG_ENV_VAR, "PHASEKEEPER_WORKFLOW_ID"]:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr(env_module, "_dotenv_loaded", True)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr(cli, "console", Console(width=200))

    yield

    reset_config()
    reset_environment()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "phasekeeper.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "storage": {"state_dir": str(tmp_path / "state")},
                "workflows": {
                    "new-project": {
                        "phases": ["discovery", "research", "planning"],
                        "gates": [{"name": "post-research", "after": "research"}],
                        "required_keys": ["project_name"],
                    }
                },
            }
        )
    )
    return path


@pytest.fixture
def invoke(config_file):
    runner = CliRunner()

    def run(*args: str):
        return runner.invoke(cli.main, ["--config", str(config_file), *args])

    return run


def start_workflow(invoke):
    result = invoke("start", "new-project", "--set", "project_name=atlas", "--id", "wf-cli")
    assert result.exit_code == 0, result.output
    return result


# =============================================================================
# Starting and inspecting
# =============================================================================


class TestStart:
    """Tests for `phasekeeper start`."""

    def test_version(self):
        result = CliRunner().invoke(cli.main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_start(self, invoke):
        result = start_workflow(invoke)

        assert "Workflow started" in result.output
        assert "wf-cli" in result.output
        assert "discovery -> research -> planning" in result.output

    def test_missing_required_key(self, invoke):
        result = invoke("start", "new-project")

        assert result.exit_code == 1
        assert "project_name" in result.output

    def test_malformed_option(self, invoke):
        result = invoke("start", "new-project", "--set", "project_name")

        assert result.exit_code == 2
        assert "KEY=VALUE" in result.output

    def test_second_active_workflow_refused(self, invoke):
        start_workflow(invoke)

        result = invoke("start", "new-project", "--set", "project_name=other")

        assert result.exit_code == 1
        assert "already active" in result.output

    def test_unknown_config_file(self, tmp_path):
        result = CliRunner().invoke(cli.main, ["--config", str(tmp_path / "missing.yaml")])

        assert result.exit_code == 2


class TestStatus:
    """Tests for `phasekeeper status`."""

    def test_no_workflows(self, invoke):
        result = invoke("status")

        assert result.exit_code == 1
        assert "No workflows found" in result.output

    def test_table(self, invoke):
        start_workflow(invoke)

        result = invoke("status")

        assert result.exit_code == 0, result.output
        assert "wf-cli" in result.output
        assert "current" in result.output
        assert "0.0%" in result.output

    def test_json(self, invoke):
        start_workflow(invoke)

        result = invoke("status", "--json")

        report = json.loads(result.output)
        assert report["workflow_id"] == "wf-cli"
        assert report["status"] == "active"
        assert report["current_phase"] == "discovery"
        assert report["awaiting_approval"] is None

    def test_named_workflow_not_found(self, invoke):
        start_workflow(invoke)

        result = invoke("status", "--workflow", "wf-missing")

        assert result.exit_code == 1
        assert "not found" in result.output


# =============================================================================
# Driving a workflow
# =============================================================================


class TestLifecycle:
    """A workflow driven through phases, gates, cancel and resume."""

    def test_phases_and_gate_decisions(self, invoke):
        start_workflow(invoke)

        result = invoke("advance")
        assert result.exit_code == 0, result.output
        assert "discovery -> research" in result.output

        result = invoke("advance")
        assert "Awaiting approval 'post-research'" in result.output

        result = invoke("reject", "post-research", "--notes", "needs sources")
        assert "Gate 'post-research' rejected" in result.output
        assert "Current phase: research" in result.output

        result = invoke("advance")
        assert "Awaiting approval 'post-research'" in result.output

        result = invoke("approve", "post-research", "--by", "lead")
        assert result.exit_code == 0, result.output
        assert "Gate 'post-research' approved" in result.output
        assert "Current phase: planning" in result.output

        result = invoke("advance")
        assert "Workflow wf-cli completed" in result.output

    def test_approving_gate_not_awaited(self, invoke):
        start_workflow(invoke)

        result = invoke("approve", "post-research")

        assert result.exit_code == 1
        assert "not awaiting approval" in result.output

    def test_cancel_and_resume(self, invoke):
        start_workflow(invoke)
        invoke("advance")

        result = invoke("cancel")
        assert "Cancelled wf-cli in phase research" in result.output

        result = invoke("advance")
        assert result.exit_code == 1

        result = invoke("resume", "--workflow", "wf-cli")
        assert result.exit_code == 0, result.output
        assert "Resumed wf-cli at phase research" in result.output

    def test_waive_unknown_item(self, invoke):
        start_workflow(invoke)

        result = invoke("waive", "ghost")

        assert result.exit_code == 1
        assert "Unknown work item: ghost" in result.output


# =============================================================================
# Checkpoints and audit
# =============================================================================


class TestCheckpoints:
    """Tests for checkpoint listing, restore and rollback."""

    def test_list(self, invoke):
        start_workflow(invoke)
        invoke("advance")

        result = invoke("checkpoints", "list")

        assert result.exit_code == 0, result.output
        assert "checkpoint-000001" in result.output
        assert "workflow-start" in result.output
        assert "checkpoint-000002" in result.output
        assert "phase-complete" in result.output

    def test_manual_checkpoint(self, invoke):
        start_workflow(invoke)

        result = invoke("checkpoints", "create")

        assert "Created checkpoint-000002" in result.output

    def test_restore_and_rollback(self, invoke):
        start_workflow(invoke)
        invoke("advance")
        invoke("advance")
        invoke("approve", "post-research")

        result = invoke("checkpoints", "restore", "checkpoint-000001")
        assert result.exit_code == 0, result.output
        assert "current phase discovery" in result.output

        result = invoke("rollback", "research")
        assert result.exit_code == 0, result.output
        assert "Rolled back wf-cli to phase research" in result.output

    def test_restore_unknown_checkpoint(self, invoke):
        start_workflow(invoke)

        result = invoke("checkpoints", "restore", "checkpoint-000099")

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_rollback_without_checkpoint(self, invoke):
        start_workflow(invoke)

        result = invoke("rollback", "planning")

        assert result.exit_code == 1
        assert "No checkpoint was taken in phase 'planning'" in result.output

    def test_empty_audit(self, invoke):
        start_workflow(invoke)

        result = invoke("audit")

        assert result.exit_code == 0
        assert "No recovery decisions recorded." in result.output


# =============================================================================
# Event loop helper
# =============================================================================


class TestRunAsync:
    """Tests for run_async()."""

    def test_pending_deliveries_finish_before_loop_closes(self):
        bus = EventBus()
        delivered = []

        async def slow_sink(event):
            await asyncio.sleep(0.01)
            delivered.append(event.category)

        bus.subscribe(slow_sink)

        async def publish():
            bus.publish(
                WorkflowEvent(
                    category=EventCategory.PHASE_TRANSITION,
                    workflow_id="wf-cli",
                    phase="discovery",
                )
            )
            return "published"

        assert cli.run_async(publish(), bus) == "published"
        assert delivered == [EventCategory.PHASE_TRANSITION]
