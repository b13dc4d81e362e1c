"""Observation surface for retry runs.

Observers receive events; they own no run state the orchestrator depends on
and can never change a run's outcome. Delivery failures are logged and dropped.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

from background_agent.models import (
    FAILED,
    RETRIES_EXHAUSTED,
    SESSION_FAILED,
    SUCCEEDED,
    TIMED_OUT,
    TURN_LIMIT_REACHED,
    RunResult,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)


class Observer:
    """Base observer. Every hook is a no-op; override what you need."""

    def attempt_started(self, attempt: int) -> None:
        pass

    def verification_completed(self, attempt: int, outcome: VerificationOutcome) -> None:
        pass

    def run_finished(self, result: RunResult) -> None:
        pass

    def close(self) -> None:
        """Release anything the observer holds open."""
        pass


def notify(observer: Optional[Observer], event: str, *args: Any) -> None:
    """Deliver one event. Never raises: a broken observer must not abort a run."""
    if observer is None:
        return
    try:
        getattr(observer, event)(*args)
    except Exception:
        logger.warning(
            "Observer %s failed to handle %s",
            type(observer).__name__,
            event,
            exc_info=True,
        )


class CompositeObserver(Observer):
    """Fans each event out to several observers, isolating each one."""

    def __init__(self, observers: Iterable[Observer]):
        self.observers = list(observers)

    def attempt_started(self, attempt: int) -> None:
        for observer in self.observers:
            notify(observer, "attempt_started", attempt)

    def verification_completed(self, attempt: int, outcome: VerificationOutcome) -> None:
        for observer in self.observers:
            notify(observer, "verification_completed", attempt, outcome)

    def run_finished(self, result: RunResult) -> None:
        for observer in self.observers:
            notify(observer, "run_finished", result)

    def close(self) -> None:
        for observer in self.observers:
            notify(observer, "close")


class LoggingObserver(Observer):
    """Writes every event to a logger, including raw verifier detail at DEBUG."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def attempt_started(self, attempt: int) -> None:
        self.log.info("attempt_started attempt=%d", attempt)

    def verification_completed(self, attempt: int, outcome: VerificationOutcome) -> None:
        self.log.info(
            "verification_completed attempt=%d passed=%s failures=%d elapsed=%s",
            attempt,
            outcome.passed,
            len(outcome.failures),
            format_duration(outcome.elapsed_seconds),
        )
        for failure in outcome.failures:
            self.log.info("  [%s] %s", failure.category.upper(), failure.summary)
            if failure.raw_detail:
                self.log.debug("  raw detail (%s):\n%s", failure.category, failure.raw_detail)

    def run_finished(self, result: RunResult) -> None:
        level = logging.INFO if result.succeeded else logging.ERROR
        self.log.log(
            level,
            "run_finished status=%s attempts=%d verifications=%d error=%s",
            result.status_label(),
            result.attempts_used,
            len(result.verification_outcomes),
            result.error_message,
        )


def _empty_metrics() -> Dict[str, float]:
    return {
        "total_runs": 0,
        "succeeded_count": 0,
        "session_failed_count": 0,
        "retries_exhausted_count": 0,
        "failed_count": 0,
        "timeout_count": 0,
        "turn_limit_count": 0,
        "total_attempts": 0,
        "total_verifications": 0,
        "total_tool_calls": 0,
        "total_duration_seconds": 0.0,
    }


class MetricsObserver(Observer):
    """
    In-memory run metrics.

    Per-process only; nothing is persisted. Counts are taken from the final
    RunResult so each run is counted exactly once.
    """

    def __init__(self):
        self.metrics = _empty_metrics()

    def run_finished(self, result: RunResult) -> None:
        m = self.metrics
        m["total_runs"] += 1
        m["total_attempts"] += result.attempts_used
        m["total_verifications"] += len(result.verification_outcomes)
        for outcome in result.execution_outcomes:
            m["total_tool_calls"] += outcome.tool_call_count
            m["total_duration_seconds"] += outcome.duration_seconds

        if result.final_status == SUCCEEDED:
            m["succeeded_count"] += 1
        elif result.final_status == RETRIES_EXHAUSTED:
            m["retries_exhausted_count"] += 1
        elif result.final_status == SESSION_FAILED:
            m["session_failed_count"] += 1
            variant_counter = {
                FAILED: "failed_count",
                TIMED_OUT: "timeout_count",
                TURN_LIMIT_REACHED: "turn_limit_count",
            }.get(result.failure_variant)
            if variant_counter:
                m[variant_counter] += 1

    def get_metrics(self) -> Dict[str, float]:
        """Raw counters plus rates and averages (all 0 before the first run)."""
        m = dict(self.metrics)
        runs = m["total_runs"]

        def ratio(value: float) -> float:
            return value / runs if runs else 0

        m["success_rate"] = ratio(m["succeeded_count"])
        m["failure_rate"] = ratio(m["session_failed_count"])
        m["retry_exhaustion_rate"] = ratio(m["retries_exhausted_count"])
        m["avg_attempts_per_run"] = ratio(m["total_attempts"])
        m["avg_duration_seconds"] = ratio(m["total_duration_seconds"])
        return m

    def reset(self) -> None:
        self.metrics = _empty_metrics()


def verification_payload(outcome: VerificationOutcome) -> Dict[str, Any]:
    """JSON-safe view of a verification outcome, without raw detail."""
    return {
        "passed": outcome.passed,
        "elapsed_seconds": outcome.elapsed_seconds,
        "failures": [
            {"category": f.category, "summary": f.summary} for f in outcome.failures
        ],
    }


def run_result_payload(result: RunResult) -> Dict[str, Any]:
    """JSON-safe view of a RunResult, without raw detail."""
    return {
        "final_status": result.final_status,
        "failure_variant": result.failure_variant,
        "failed_attempt": result.failed_attempt,
        "attempts_used": result.attempts_used,
        "error_message": result.error_message,
        "execution_outcomes": [
            {
                "status": o.status,
                "diagnostic": o.diagnostic,
                "duration_seconds": o.duration_seconds,
                "tool_call_count": o.tool_call_count,
            }
            for o in result.execution_outcomes
        ],
        "verification_outcomes": [verification_payload(v) for v in result.verification_outcomes],
    }


class WebhookObserver(Observer):
    """POSTs each event as JSON to an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
        run_label: Optional[str] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.client = client or httpx.Client(timeout=timeout)
        self.run_label = run_label

    def _post(self, event: str, data: Dict[str, Any]) -> None:
        payload = {"event": event, "run": self.run_label, "data": data}
        response = self.client.post(self.url, json=payload)
        response.raise_for_status()

    def attempt_started(self, attempt: int) -> None:
        self._post("attempt_started", {"attempt": attempt})

    def verification_completed(self, attempt: int, outcome: VerificationOutcome) -> None:
        self._post("verification_completed", {"attempt": attempt, **verification_payload(outcome)})

    def run_finished(self, result: RunResult) -> None:
        self._post("run_finished", run_result_payload(result))

    def close(self) -> None:
        self.client.close()


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 1:
        return f"{seconds*1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    else:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.0f}s"


def format_run_summary(result: RunResult, task_label: Optional[str] = None) -> List[str]:
    """
    Human-readable summary lines for a finished run.

    Goal: understand the whole run in under 30 seconds, without raw logs.
    """
    lines = ["=" * 60]
    lines.append(f"RUN SUMMARY: {task_label}" if task_label else "RUN SUMMARY")
    lines.append("=" * 60)
    lines.append(f"  Status:      {result.status_label()}")
    lines.append(f"  Attempts:    {result.attempts_used}")
    if result.failed_attempt is not None:
        lines.append(f"  Failed on:   attempt {result.failed_attempt}")
    if result.error_message:
        lines.append(f"  Error:       {result.error_message.splitlines()[0][:80]}")
    lines.append("")

    lines.append("ATTEMPTS")
    lines.append("-" * 40)
    for i, outcome in enumerate(result.execution_outcomes, start=1):
        status_icon = "✓" if outcome.succeeded else "✗"
        line = f"  {status_icon} #{i} {outcome.status} ({format_duration(outcome.duration_seconds)})"
        if i <= len(result.verification_outcomes):
            verification = result.verification_outcomes[i - 1]
            if verification.passed:
                line += " - verification passed"
            else:
                line += f" - verification failed ({len(verification.failures)} failure(s))"
        lines.append(line)
    lines.append("")

    last = result.last_verification
    if last is not None and not last.passed:
        lines.append("LAST FAILURES")
        lines.append("-" * 40)
        for failure in last.failures:
            first_line = failure.summary.splitlines()[0] if failure.summary else ""
            lines.append(f"  [{failure.category.upper()}] {first_line[:70]}")
        lines.append("")

    return lines
