"""Retry orchestrator: bounded re-attempts driven by verification results.

Distinct from transport-level retries inside an agent session (429s and the
like). Here a retry means: the session finished but the workspace failed
verification, so a FRESH session is started with a digest of the failures
appended to the original instruction.

Rules:
- New ExecutionAttempt per attempt, built by the factory. Never reused, so no
  conversation history accumulates across attempts.
- Session-level failures (failed, timed_out, turn_limit_reached) are terminal.
  The same budget would reproduce the same failure.
- Only a succeeded session with failed verification is retried.
- The original instruction always comes first, verbatim. The digest follows it.
- No backoff between attempts. Verification failures follow from code state.
- The workspace is shared and NOT rolled back between attempts.
"""

import logging
import time
from pathlib import Path
from typing import Any, Optional, Sequence, Union

from background_agent.attempt import AttemptFactory
from background_agent.constants import DIGEST_CHAR_LIMIT
from background_agent.errors import SessionTimeoutError, TurnLimitError
from background_agent.models import (
    FAILED,
    RETRIES_EXHAUSTED,
    SESSION_FAILED,
    SUCCEEDED,
    TIMED_OUT,
    TURN_LIMIT_REACHED,
    VERIFIER_ERROR,
    ExecutionOutcome,
    RetryPolicy,
    RunRecord,
    RunResult,
    VerificationOutcome,
)
from background_agent.observe import Observer, notify
from background_agent.summarizer import build_digest

logger = logging.getLogger(__name__)

RETRY_SEPARATOR = "---"
RETRY_DIRECTIVE = "Fix the issues above and complete the original task."


def build_attempt_instruction(
    original_instruction: str,
    attempt: int,
    failed_verifications: Sequence[VerificationOutcome] = (),
    digest_limit: int = DIGEST_CHAR_LIMIT,
) -> str:
    """
    Build the instruction text for a given attempt.

    Attempt 1 gets the original instruction byte-for-byte. Later attempts get:
    1. The original instruction, untruncated (primary directive)
    2. Separator + failure digest of every failed verification so far
    3. A directive to fix the issues and finish the task
    """
    if attempt == 1:
        return original_instruction

    digest = build_digest(failed_verifications, limit=digest_limit)
    return "\n".join([
        original_instruction,
        "",
        RETRY_SEPARATOR,
        f"PREVIOUS ATTEMPT {attempt - 1} FAILED VERIFICATION:",
        digest,
        RETRY_SEPARATOR,
        RETRY_DIRECTIVE,
    ])


def decide_next(record: RunRecord, policy: RetryPolicy) -> Optional[RunResult]:
    """
    Decide the run's fate after the latest attempt.

    Returns the frozen RunResult when the run is over, or None to continue
    with the next attempt.
    """
    last = record.execution_outcomes[-1]
    if not last.succeeded:
        return record.freeze(SESSION_FAILED, failure_variant=last.status, error_message=last.diagnostic)

    if policy.verifier is None:
        return record.freeze(SUCCEEDED)

    if len(record.verification_outcomes) != record.attempts_started:
        raise RuntimeError("Attempt succeeded but was never verified")

    if record.verification_outcomes[-1].passed:
        return record.freeze(SUCCEEDED)

    if record.attempts_started < policy.max_attempts:
        return None

    return record.freeze(
        RETRIES_EXHAUSTED,
        error_message=f"Verification still failing after {policy.max_attempts} attempts",
    )


class RetryOrchestrator:
    """Runs an instruction through up to `policy.max_attempts` fresh attempts.

    Holds only wiring. All state of a run lives in the RunRecord created by
    run(), so one orchestrator can serve concurrent runs on distinct
    workspaces.
    """

    def __init__(
        self,
        attempt_factory: AttemptFactory,
        workspace: Union[str, Path],
        observer: Optional[Observer] = None,
        digest_limit: int = DIGEST_CHAR_LIMIT,
    ):
        self.attempt_factory = attempt_factory
        self.workspace = Path(workspace)
        self.observer = observer if observer is not None else Observer()
        self.digest_limit = digest_limit

    def run(self, original_instruction: str, policy: Optional[RetryPolicy] = None) -> RunResult:
        """
        Run the task with the outer retry loop.

        Args:
            original_instruction: The task text; always sent first, verbatim
            policy: Attempt budget and optional verifier (default: 3 attempts, no verifier)

        Returns:
            RunResult with final status, attempt count and every per-attempt outcome
        """
        if not original_instruction or not original_instruction.strip():
            raise ValueError("original_instruction must be non-empty")
        if policy is None:
            policy = RetryPolicy()

        record = RunRecord(max_attempts=policy.max_attempts)
        result = None
        for attempt in range(1, policy.max_attempts + 1):
            instruction = self.begin_attempt(original_instruction, record, attempt, policy)
            outcome = self.execute_attempt(instruction)
            record.add_execution(outcome)

            if outcome.succeeded and policy.verifier is not None:
                result = self.verify_attempt(record, policy, attempt)
                if result is not None:
                    break

            result = decide_next(record, policy)
            if result is not None:
                break

        return self.finish(result)

    def begin_attempt(
        self,
        original_instruction: str,
        record: RunRecord,
        attempt: int,
        policy: RetryPolicy,
    ) -> str:
        """Announce the attempt and build its instruction text."""
        logger.info("Starting attempt %d/%d", attempt, policy.max_attempts)
        notify(self.observer, "attempt_started", attempt)
        return build_attempt_instruction(
            original_instruction,
            attempt,
            record.failed_verifications(),
            digest_limit=self.digest_limit,
        )

    def execute_attempt(self, instruction: str) -> ExecutionOutcome:
        """
        Run one fresh attempt to a terminal outcome.

        Resources are released on every exit path. Exceptions from the attempt
        become a `failed` outcome (or timed_out/turn_limit_reached for the
        matching error types). A failing stop() is logged and never replaces
        the outcome.
        """
        started = time.monotonic()
        attempt = None
        handle = None
        try:
            attempt = self.attempt_factory()
            handle = attempt.start()
            outcome = attempt.run(instruction)
        except TurnLimitError as e:
            outcome = ExecutionOutcome(
                status=TURN_LIMIT_REACHED,
                diagnostic=str(e),
                duration_seconds=time.monotonic() - started,
            )
        except SessionTimeoutError as e:
            outcome = ExecutionOutcome(
                status=TIMED_OUT,
                diagnostic=str(e),
                duration_seconds=time.monotonic() - started,
            )
        except Exception as e:
            logger.error("Execution attempt crashed", exc_info=True)
            outcome = ExecutionOutcome(
                status=FAILED,
                diagnostic=f"{type(e).__name__}: {e}",
                duration_seconds=time.monotonic() - started,
            )
        finally:
            if attempt is not None:
                self._release(attempt, handle)

        if not outcome.succeeded:
            logger.error("Session %s, not retrying: %s", outcome.status, outcome.diagnostic)
        return outcome

    def verify_attempt(
        self,
        record: RunRecord,
        policy: RetryPolicy,
        attempt: int,
    ) -> Optional[RunResult]:
        """
        Verify the workspace after a succeeded attempt and record the outcome.

        Returns a terminal RunResult only if the verifier itself crashed.
        """
        try:
            verification = policy.verifier.verify(self.workspace)
        except Exception as e:
            logger.error("Verifier crashed on attempt %d", attempt, exc_info=True)
            return record.freeze(
                SESSION_FAILED,
                failure_variant=VERIFIER_ERROR,
                error_message=f"Verifier error: {e}",
            )

        previous_failures = record.failed_verifications()
        record.add_verification(verification)
        notify(self.observer, "verification_completed", attempt, verification)

        if verification.passed:
            logger.info("Verification passed on attempt %d", attempt)
            return None

        logger.warning(
            "Verification failed on attempt %d/%d with %d failure(s)",
            attempt,
            policy.max_attempts,
            len(verification.failures),
        )
        if previous_failures and previous_failures[-1].fingerprint() == verification.fingerprint():
            logger.warning(
                "Attempt %d reproduced the previous attempt's failures exactly "
                "(fingerprint %s)",
                attempt,
                verification.fingerprint(),
            )
        return None

    def finish(self, result: RunResult) -> RunResult:
        """Emit the final event and hand the frozen result back."""
        logger.info(
            "Run finished: %s after %d attempt(s)",
            result.status_label(),
            result.attempts_used,
        )
        notify(self.observer, "run_finished", result)
        return result

    @staticmethod
    def _release(attempt: Any, handle: Any) -> None:
        try:
            attempt.stop(handle)
        except Exception:
            logger.warning("Failed to release execution attempt", exc_info=True)

