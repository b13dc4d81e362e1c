"""Data model shared by the orchestrator, summarizer and collaborators."""

import hashlib
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from background_agent.constants import DEFAULT_MAX_ATTEMPTS, MAX_ATTEMPTS_CEILING
from background_agent.errors import InvalidPolicyError


# Execution statuses (one terminal status per attempt)
SUCCEEDED = "succeeded"
FAILED = "failed"
TIMED_OUT = "timed_out"
TURN_LIMIT_REACHED = "turn_limit_reached"

EXECUTION_STATUSES = (SUCCEEDED, FAILED, TIMED_OUT, TURN_LIMIT_REACHED)

# Verification failure categories
BUILD = "build"
TEST = "test"
LINT = "lint"
CUSTOM = "custom"

FAILURE_CATEGORIES = (BUILD, TEST, LINT, CUSTOM)

# Run final statuses
SESSION_FAILED = "session_failed"
RETRIES_EXHAUSTED = "retries_exhausted"

FINAL_STATUSES = (SUCCEEDED, SESSION_FAILED, RETRIES_EXHAUSTED)

# session_failed variants: the failing execution status, or a crashed verifier
VERIFIER_ERROR = "verifier_error"
SESSION_FAILURE_VARIANTS = (FAILED, TIMED_OUT, TURN_LIMIT_REACHED, VERIFIER_ERROR)


@dataclass(frozen=True)
class ExecutionOutcome:
    """Terminal outcome of one execution attempt."""
    status: str  # succeeded | failed | timed_out | turn_limit_reached
    diagnostic: Optional[str] = None
    duration_seconds: float = 0.0
    tool_call_count: int = 0

    def __post_init__(self):
        if self.status not in EXECUTION_STATUSES:
            raise ValueError(f"Unknown execution status: {self.status}")

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED


@dataclass(frozen=True)
class VerificationFailure:
    """One failure reported by a verifier.

    `summary` is the short, agent-facing line. `raw_detail` is for humans and
    observers only and never reaches the agent.
    """
    category: str  # build | test | lint | custom
    summary: str
    raw_detail: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if self.category not in FAILURE_CATEGORIES:
            raise ValueError(f"Unknown failure category: {self.category}")


@dataclass(frozen=True)
class VerificationOutcome:
    """Result of one verification pass over the workspace."""
    passed: bool
    failures: Tuple[VerificationFailure, ...] = ()
    elapsed_seconds: float = 0.0

    def __post_init__(self):
        # Accept any sequence from verifiers but store it immutably
        object.__setattr__(self, "failures", tuple(self.failures))

    def fingerprint(self) -> str:
        """Stable hash of the (category, summary) pairs, ignoring raw detail."""
        digest = hashlib.sha256()
        for failure in self.failures:
            digest.update(failure.category.encode("utf-8"))
            digest.update(b"\x00")
            digest.update(failure.summary.encode("utf-8"))
            digest.update(b"\x01")
        return digest.hexdigest()[:16]


@dataclass(frozen=True)
class RetryPolicy:
    """How many attempts a run may use and what judges each attempt."""
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    verifier: Optional[Any] = None  # anything with verify(workspace) -> VerificationOutcome

    def __post_init__(self):
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise InvalidPolicyError(
                f"max_attempts must be an integer, got {self.max_attempts!r}"
            )
        if not 1 <= self.max_attempts <= MAX_ATTEMPTS_CEILING:
            raise InvalidPolicyError(
                f"max_attempts must be between 1 and {MAX_ATTEMPTS_CEILING}, "
                f"got {self.max_attempts}"
            )


@dataclass(frozen=True)
class RunResult:
    """Frozen record of one run across all of its attempts."""
    final_status: str  # succeeded | session_failed | retries_exhausted
    attempts_used: int
    execution_outcomes: Tuple[ExecutionOutcome, ...]
    verification_outcomes: Tuple[VerificationOutcome, ...]
    failure_variant: Optional[str] = None  # set only for session_failed
    failed_attempt: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.final_status == SUCCEEDED

    @property
    def last_verification(self) -> Optional[VerificationOutcome]:
        return self.verification_outcomes[-1] if self.verification_outcomes else None

    def status_label(self) -> str:
        """Human label, e.g. "session_failed(timed_out)"."""
        if self.final_status == SESSION_FAILED:
            return f"{SESSION_FAILED}({self.failure_variant})"
        return self.final_status


@dataclass
class RunRecord:
    """Append-only record of a run in progress; frozen into a RunResult.

    Lives only inside one call to RetryOrchestrator.run, so concurrent runs
    never share it.
    """
    max_attempts: int
    execution_outcomes: List[ExecutionOutcome] = field(default_factory=list)
    verification_outcomes: List[VerificationOutcome] = field(default_factory=list)

    @property
    def attempts_started(self) -> int:
        return len(self.execution_outcomes)

    def add_execution(self, outcome: ExecutionOutcome) -> None:
        if len(self.execution_outcomes) >= self.max_attempts:
            raise RuntimeError("Run already used every allowed attempt")
        self.execution_outcomes.append(outcome)

    def add_verification(self, outcome: VerificationOutcome) -> None:
        if len(self.verification_outcomes) >= len(self.execution_outcomes):
            raise RuntimeError("Verification recorded without a matching attempt")
        self.verification_outcomes.append(outcome)

    def failed_verifications(self) -> List[VerificationOutcome]:
        return [v for v in self.verification_outcomes if not v.passed]

    def freeze(
        self,
        final_status: str,
        failure_variant: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> RunResult:
        if final_status not in FINAL_STATUSES:
            raise ValueError(f"Unknown final status: {final_status}")
        if final_status == SESSION_FAILED and failure_variant not in SESSION_FAILURE_VARIANTS:
            raise ValueError(f"Unknown session failure variant: {failure_variant}")

        attempts = self.attempts_started
        return RunResult(
            final_status=final_status,
            attempts_used=attempts,
            execution_outcomes=tuple(self.execution_outcomes),
            verification_outcomes=tuple(self.verification_outcomes),
            failure_variant=failure_variant if final_status == SESSION_FAILED else None,
            failed_attempt=attempts if final_status == SESSION_FAILED else None,
            error_message=error_message,
        )
