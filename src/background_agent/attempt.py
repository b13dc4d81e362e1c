"""Execution attempt interface and a subprocess-backed implementation.

An attempt is one bounded run of the coding agent against the workspace. It
enforces its own turn and wall-clock budget and reports exactly one terminal
status. The orchestrator only ever hands it instruction text.
"""

import logging
import shlex
import subprocess
import time
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from background_agent.constants import DEFAULT_ATTEMPT_TIMEOUT_S, TURN_LIMIT_EXIT_CODE
from background_agent.models import (
    FAILED,
    SUCCEEDED,
    TIMED_OUT,
    TURN_LIMIT_REACHED,
    ExecutionOutcome,
)

logger = logging.getLogger(__name__)

# Characters of stderr kept as the diagnostic of a failed attempt
DIAGNOSTIC_TAIL_CHARS = 2000


class ExecutionAttempt(ABC):
    """One fresh agent session. Never reused across attempts."""

    @abstractmethod
    def start(self) -> Any:
        """Acquire the attempt's resources and return a handle for stop()."""
        pass

    @abstractmethod
    def run(self, instruction: str) -> ExecutionOutcome:
        """Run the agent to a terminal outcome."""
        pass

    @abstractmethod
    def stop(self, handle: Any) -> None:
        """
        Release the attempt's resources.

        Must be idempotent and safe to call after any outcome, including when
        start() failed and `handle` is None.
        """
        pass


AttemptFactory = Callable[[], ExecutionAttempt]


class SubprocessAttempt(ExecutionAttempt):
    """Runs an external agent command with the instruction on stdin.

    Exit 0 -> succeeded, exit `turn_limit_exit_code` -> turn_limit_reached,
    timeout -> timed_out, anything else -> failed.
    """

    def __init__(
        self,
        command: Union[str, List[str]],
        workspace: Union[str, Path],
        timeout_seconds: float = DEFAULT_ATTEMPT_TIMEOUT_S,
        turn_limit_exit_code: Optional[int] = TURN_LIMIT_EXIT_CODE,
    ):
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("Agent command is empty")
        self.workspace = Path(workspace)
        self.timeout_seconds = timeout_seconds
        self.turn_limit_exit_code = turn_limit_exit_code
        self._process: Optional[subprocess.Popen] = None
        self._session_id: Optional[str] = None

    def start(self) -> str:
        if self._session_id is not None:
            raise RuntimeError("SubprocessAttempt instances are single-use")
        self._session_id = str(uuid.uuid4())
        logger.debug("Attempt session %s created in %s", self._session_id, self.workspace)
        return self._session_id

    def run(self, instruction: str) -> ExecutionOutcome:
        started = time.monotonic()
        self._process = subprocess.Popen(
            self.command,
            cwd=self.workspace,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
        )
        try:
            _, stderr = self._process.communicate(instruction, timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            self._process.kill()
            self._process.communicate()
            return ExecutionOutcome(
                status=TIMED_OUT,
                diagnostic=f"Session timed out after {self.timeout_seconds:g}s",
                duration_seconds=time.monotonic() - started,
            )

        duration = time.monotonic() - started
        code = self._process.returncode
        if code == 0:
            return ExecutionOutcome(status=SUCCEEDED, duration_seconds=duration)

        tail = (stderr or "").strip()[-DIAGNOSTIC_TAIL_CHARS:]
        if self.turn_limit_exit_code is not None and code == self.turn_limit_exit_code:
            return ExecutionOutcome(
                status=TURN_LIMIT_REACHED,
                diagnostic=tail or "Agent reported turn limit reached",
                duration_seconds=duration,
            )
        return ExecutionOutcome(
            status=FAILED,
            diagnostic=tail or f"Agent exited with code {code}",
            duration_seconds=duration,
        )

    def stop(self, handle: Any) -> None:
        process = self._process
        if process is not None and process.poll() is None:
            logger.info("Killing agent process for session %s", handle)
            process.kill()
            process.wait()


def subprocess_attempt_factory(
    command: Union[str, List[str]],
    workspace: Union[str, Path],
    timeout_seconds: float = DEFAULT_ATTEMPT_TIMEOUT_S,
    turn_limit_exit_code: Optional[int] = TURN_LIMIT_EXIT_CODE,
) -> AttemptFactory:
    """Factory producing a brand-new SubprocessAttempt per call."""

    def factory() -> ExecutionAttempt:
        return SubprocessAttempt(
            command,
            workspace,
            timeout_seconds=timeout_seconds,
            turn_limit_exit_code=turn_limit_exit_code,
        )

    return factory
