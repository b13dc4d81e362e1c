"""Tests for the subprocess-backed execution attempt."""

import sys

import pytest

from background_agent.attempt import SubprocessAttempt, subprocess_attempt_factory
from background_agent.models import FAILED, SUCCEEDED, TIMED_OUT, TURN_LIMIT_REACHED


def agent(code):
    return [sys.executable, "-c", code]


class TestSubprocessAttempt:
    """Exit status -> ExecutionOutcome mapping."""

    def test_success_receives_instruction(self, tmp_path):
        code = "import sys; open('instruction.txt', 'w').write(sys.stdin.read())"
        attempt = SubprocessAttempt(agent(code), tmp_path)
        handle = attempt.start()
        outcome = attempt.run("Bump the version.")
        attempt.stop(handle)

        assert outcome.status == SUCCEEDED
        assert (tmp_path / "instruction.txt").read_text() == "Bump the version."

    def test_turn_limit_exit_code(self, tmp_path):
        attempt = SubprocessAttempt(agent("import sys; sys.exit(3)"), tmp_path)
        attempt.start()
        outcome = attempt.run("task")
        assert outcome.status == TURN_LIMIT_REACHED

    def test_other_exit_code_is_failure(self, tmp_path):
        code = "import sys; sys.stderr.write('model refused'); sys.exit(1)"
        attempt = SubprocessAttempt(agent(code), tmp_path)
        attempt.start()
        outcome = attempt.run("task")

        assert outcome.status == FAILED
        assert outcome.diagnostic == "model refused"

    def test_non_utf8_output_does_not_fail_the_session(self, tmp_path):
        code = "import sys; sys.stdin.read(); sys.stdout.buffer.write(b'caf\\xe9\\n')"
        attempt = SubprocessAttempt(agent(code), tmp_path)
        attempt.start()
        assert attempt.run("task").status == SUCCEEDED

    def test_non_utf8_stderr_in_diagnostic(self, tmp_path):
        code = "import sys; sys.stderr.buffer.write(b'caf\\xe9 crashed'); sys.exit(1)"
        attempt = SubprocessAttempt(agent(code), tmp_path)
        attempt.start()
        outcome = attempt.run("task")

        assert outcome.status == FAILED
        assert outcome.diagnostic == "caf� crashed"

    def test_turn_limit_code_can_be_disabled(self, tmp_path):
        attempt = SubprocessAttempt(agent("import sys; sys.exit(3)"), tmp_path, turn_limit_exit_code=None)
        attempt.start()
        outcome = attempt.run("task")
        assert outcome.status == FAILED
        assert outcome.diagnostic == "Agent exited with code 3"

    def test_timeout(self, tmp_path):
        attempt = SubprocessAttempt(agent("import time; time.sleep(10)"), tmp_path, timeout_seconds=0.5)
        handle = attempt.start()
        outcome = attempt.run("task")
        attempt.stop(handle)

        assert outcome.status == TIMED_OUT
        assert "0.5s" in outcome.diagnostic

    def test_stop_is_idempotent(self, tmp_path):
        attempt = SubprocessAttempt(agent("pass"), tmp_path)
        attempt.stop(None)
        handle = attempt.start()
        attempt.run("task")
        attempt.stop(handle)
        attempt.stop(handle)

    def test_single_use(self, tmp_path):
        attempt = SubprocessAttempt(agent("pass"), tmp_path)
        attempt.start()
        with pytest.raises(RuntimeError):
            attempt.start()

    def test_factory_builds_fresh_instances(self, tmp_path):
        factory = subprocess_attempt_factory("agent --model x", tmp_path, timeout_seconds=42)
        first, second = factory(), factory()

        assert first is not second
        assert first.command == ["agent", "--model", "x"]
        assert first.timeout_seconds == 42

    def test_empty_command_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            SubprocessAttempt("   ", tmp_path)
