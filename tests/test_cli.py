"""Tests for the CLI (click CliRunner, real subprocess agents)."""

import json
import sys

import pytest
from click.testing import CliRunner

from background_agent.cli import cli, exit_code_for
from background_agent.models import (
    FAILED,
    RETRIES_EXHAUSTED,
    SESSION_FAILED,
    SUCCEEDED,
    TIMED_OUT,
    TURN_LIMIT_REACHED,
    ExecutionOutcome,
    RunRecord,
)
from background_agent.observe import MetricsObserver, Observer


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in (
        "AGENT_COMMAND",
        "BACKGROUND_AGENT_MAX_ATTEMPTS",
        "BACKGROUND_AGENT_TIMEOUT_S",
        "BACKGROUND_AGENT_WEBHOOK_URL",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def runner():
    return CliRunner()


def python_command(script_path):
    return f'"{sys.executable}" "{script_path}"'


def frozen(final_status, outcome_status=SUCCEEDED, variant=None):
    record = RunRecord(max_attempts=3)
    record.add_execution(ExecutionOutcome(status=outcome_status))
    return record.freeze(final_status, failure_variant=variant)


# =============================================================================
# TESTS - Exit codes
# =============================================================================

class TestExitCodes:
    """RunResult -> process exit code."""

    def test_success(self):
        assert exit_code_for(frozen(SUCCEEDED)) == 0

    def test_timeout(self):
        assert exit_code_for(frozen(SESSION_FAILED, TIMED_OUT, TIMED_OUT)) == 124

    @pytest.mark.parametrize("status,variant", [
        (SESSION_FAILED, FAILED),
        (SESSION_FAILED, TURN_LIMIT_REACHED),
        (RETRIES_EXHAUSTED, None),
    ])
    def test_other_failures(self, status, variant):
        outcome_status = variant or SUCCEEDED
        assert exit_code_for(frozen(status, outcome_status, variant)) == 1


# =============================================================================
# TESTS - Commands
# =============================================================================

class TestRunCommand:
    """background-agent run."""

    def test_success_with_build_verifier(self, runner, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        agent = tmp_path / "agent.py"
        agent.write_text("import sys; sys.stdin.read(); open('done.txt', 'w').write('x')\n")
        build = tmp_path / "build.py"
        build.write_text("import os, sys; sys.exit(0 if os.path.exists('done.txt') else 1)\n")

        result = runner.invoke(cli, [
            "run",
            "--repo", str(repo),
            "--task", "Create done.txt",
            "--agent-command", python_command(agent),
            "--build", python_command(build),
        ])

        assert result.exit_code == 0, result.output
        assert "Status:      succeeded" in result.output
        assert (repo / "done.txt").exists()

    def test_session_failure_exit_code(self, runner, tmp_path):
        agent = tmp_path / "agent.py"
        agent.write_text("import sys; sys.exit(1)\n")

        result = runner.invoke(cli, [
            "run",
            "--repo", str(tmp_path),
            "--task", "Anything",
            "--agent-command", python_command(agent),
        ])

        assert result.exit_code == 1
        assert "session_failed(failed)" in result.output

    def test_missing_agent_command(self, runner, tmp_path):
        result = runner.invoke(cli, ["run", "--repo", str(tmp_path), "--task", "x"])
        assert result.exit_code == 2
        assert "AGENT_COMMAND" in result.output

    def test_max_attempts_ceiling(self, runner, tmp_path):
        result = runner.invoke(cli, [
            "run", "--repo", str(tmp_path), "--task", "x",
            "--agent-command", "agent", "--max-attempts", "11",
        ])
        assert result.exit_code == 2

    def test_blank_task_is_usage_error(self, runner, tmp_path):
        result = runner.invoke(cli, [
            "run", "--repo", str(tmp_path), "--task", "   ", "--agent-command", "agent",
        ])
        assert result.exit_code == 2
        assert "must not be blank" in result.output

    def test_observer_closed_after_run(self, runner, tmp_path, monkeypatch):
        closed = []

        class ClosingObserver(Observer):
            def close(self):
                closed.append(True)

        monkeypatch.setattr(
            "background_agent.cli._build_observer",
            lambda webhook_url, run_label: (ClosingObserver(), MetricsObserver()),
        )
        agent = tmp_path / "agent.py"
        agent.write_text("import sys; sys.exit(1)\n")

        runner.invoke(cli, [
            "run", "--repo", str(tmp_path), "--task", "Anything",
            "--agent-command", python_command(agent),
        ])

        assert closed == [True]


class TestRunTaskCommand:
    """background-agent run-task."""

    def test_run_task_writes_report(self, runner, tmp_path):
        agent = tmp_path / "agent.py"
        agent.write_text("import sys; sys.stdin.read()\n")
        task_file = tmp_path / "task.json"
        task_file.write_text(json.dumps({
            "task_id": "noop",
            "instruction": "Do nothing.",
            "workspace": str(tmp_path),
            "agent_command": [sys.executable, str(agent)],
        }))
        output_dir = tmp_path / "reports"

        result = runner.invoke(cli, ["run-task", str(task_file), "--output-dir", str(output_dir)])

        assert result.exit_code == 0, result.output
        assert "RUN SUMMARY: noop" in result.output
        assert len(list(output_dir.glob("noop_*.json"))) == 1

    def test_invalid_task_file(self, runner, tmp_path):
        task_file = tmp_path / "task.json"
        task_file.write_text(json.dumps({"task_id": "broken"}))

        result = runner.invoke(cli, ["run-task", str(task_file)])

        assert result.exit_code == 2
        assert "Invalid task definition" in result.output

    def test_blank_instruction_rejected(self, runner, tmp_path):
        task_file = tmp_path / "task.json"
        task_file.write_text(json.dumps({
            "task_id": "blank",
            "instruction": "   ",
            "workspace": str(tmp_path),
            "agent_command": "agent",
        }))

        result = runner.invoke(cli, ["run-task", str(task_file)])

        assert result.exit_code == 2
        assert "Invalid task definition" in result.output


class TestSummarizeCommand:
    """background-agent summarize."""

    def test_summarize_build_log(self, runner, tmp_path):
        log = tmp_path / "build.log"
        log.write_text("src/app.ts(3,5): error TS2304: Cannot find name 'x'.\nDone in 2s\n")

        result = runner.invoke(cli, ["summarize", "--category", "build", str(log)])

        assert result.exit_code == 0
        assert "1 build error(s):" in result.output
        assert "TS2304" in result.output

    def test_summarize_stdin(self, runner):
        result = runner.invoke(cli, ["summarize", "--category", "custom", "-"], input="")
        assert result.exit_code == 0
        assert "Verification failed (no output captured)" in result.output


class TestCheckConfig:
    """background-agent check-config."""

    def test_configured(self, runner, monkeypatch):
        monkeypatch.setenv("AGENT_COMMAND", "my-agent")
        result = runner.invoke(cli, ["check-config"])
        assert result.exit_code == 0
        assert "AGENT_COMMAND: my-agent" in result.output
        assert "Webhook: [not set]" in result.output

    def test_not_configured(self, runner):
        result = runner.invoke(cli, ["check-config"])
        assert result.exit_code == 1
        assert "AGENT_COMMAND is not set" in result.output


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
