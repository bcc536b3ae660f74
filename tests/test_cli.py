from pathlib import Path

import pytest
from typer.testing import CliRunner

from taskpilot.cli import app

CONFIG = Path(__file__).resolve().parents[1] / "examples" / "configs" / "orchestration.yaml"


@pytest.fixture
def runner():
    return CliRunner()


def test_detect_multi_action(runner):
    result = runner.invoke(app, ["detect", "Send updates to alice@test.com and bob@test.com"])

    assert result.exit_code == 0
    assert "multi-action" in result.output
    assert "Targets: alice@test.com, bob@test.com" in result.output
    assert "Complexity heuristic: multiple steps" in result.output


def test_detect_single_action(runner):
    result = runner.invoke(app, ["detect", "email alice@test.com the report"])

    assert result.exit_code == 0
    assert "Detector: single action" in result.output
    assert "Complexity heuristic: single step" in result.output


def test_inspect_lists_workflows_and_schedules(runner):
    result = runner.invoke(app, ["inspect", str(CONFIG)])

    assert result.exit_code == 0, result.output
    assert "Project: team-updates" in result.output
    assert "- weekly-status" in result.output
    assert "- book-smiles" in result.output
    assert "Monday status mail: weekly-status" in result.output


def test_run_workflow_succeeds(runner):
    result = runner.invoke(app, ["run-workflow", str(CONFIG), "weekly-status", "--var", "week=42"])

    assert result.exit_code == 0, result.output
    assert "Workflow completed successfully." in result.output


def test_run_workflow_unknown_id_exits_with_error(runner):
    result = runner.invoke(app, ["run-workflow", str(CONFIG), "ghost"])

    assert result.exit_code == 1
    assert "Workflow not found: ghost" in result.output


def test_run_workflow_rejects_malformed_variables(runner):
    result = runner.invoke(app, ["run-workflow", str(CONFIG), "weekly-status", "--var", "week"])

    assert result.exit_code != 0


def test_missing_config_exits_with_code_2(runner, tmp_path):
    result = runner.invoke(app, ["inspect", str(tmp_path / "nope.yaml")])

    assert result.exit_code == 2
    assert "Configuration error" in result.output


def test_schedule_runs_until_max_executions(runner):
    result = runner.invoke(
        app,
        [
            "schedule",
            str(CONFIG),
            "weekly-status",
            "--cron",
            "* * * * * *",
            "--max-executions",
            "1",
            "--poll",
            "0.05",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "All schedules finished." in result.output
