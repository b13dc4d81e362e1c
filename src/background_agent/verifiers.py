"""Verifier interface plus command-backed and composite verifiers.

A verifier judges the workspace after a succeeded attempt. The orchestrator
only needs `verify(workspace) -> VerificationOutcome`, so new kinds of checks
(scope judges, policy gates) compose without touching the retry loop.
"""

import logging
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Optional, Union

from background_agent.constants import DEFAULT_VERIFIER_TIMEOUT_S
from background_agent.models import (
    FAILURE_CATEGORIES,
    VerificationFailure,
    VerificationOutcome,
)
from background_agent.summarizer import short_summary, summarize_failure

logger = logging.getLogger(__name__)


class Verifier(ABC):
    """Judges a workspace. Must not touch orchestration state."""

    @abstractmethod
    def verify(self, workspace: Path) -> VerificationOutcome:
        pass


class CommandVerifier(Verifier):
    """
    Runs a shell-free command in the workspace.

    Exit 0 passes. Otherwise the combined output is summarized for its
    category; the full output is kept as raw_detail for humans only.
    """

    def __init__(
        self,
        category: str,
        command: Union[str, List[str]],
        timeout_seconds: float = DEFAULT_VERIFIER_TIMEOUT_S,
        name: Optional[str] = None,
    ):
        if category not in FAILURE_CATEGORIES:
            raise ValueError(f"Unknown verifier category: {category}")
        self.category = category
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("Verifier command is empty")
        self.timeout_seconds = timeout_seconds
        self.name = name or category

    def verify(self, workspace: Path) -> VerificationOutcome:
        started = time.monotonic()
        logger.debug("Running %s verifier: %s", self.name, shlex.join(self.command))
        try:
            result = subprocess.run(
                self.command,
                cwd=workspace,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            output = _decode(e.stdout) + _decode(e.stderr)
            failure = VerificationFailure(
                category=self.category,
                summary=f"{self.name} timed out after {self.timeout_seconds:g}s",
                raw_detail=output or None,
            )
            return VerificationOutcome(
                passed=False,
                failures=(failure,),
                elapsed_seconds=time.monotonic() - started,
            )

        elapsed = time.monotonic() - started
        if result.returncode == 0:
            return VerificationOutcome(passed=True, elapsed_seconds=elapsed)

        output = "\n".join(part for part in (result.stdout, result.stderr) if part)
        failure = VerificationFailure(
            category=self.category,
            summary=short_summary(summarize_failure(self.category, output)),
            raw_detail=output,
        )
        return VerificationOutcome(passed=False, failures=(failure,), elapsed_seconds=elapsed)


class CompositeVerifier(Verifier):
    """Runs every child verifier in order; passes only if all of them pass."""

    def __init__(self, verifiers: Iterable[Verifier]):
        self.verifiers = list(verifiers)
        if not self.verifiers:
            raise ValueError("CompositeVerifier needs at least one verifier")

    def verify(self, workspace: Path) -> VerificationOutcome:
        failures = []
        elapsed = 0.0
        passed = True
        for verifier in self.verifiers:
            outcome = verifier.verify(workspace)
            elapsed += outcome.elapsed_seconds
            failures.extend(outcome.failures)
            passed = passed and outcome.passed
        return VerificationOutcome(passed=passed, failures=tuple(failures), elapsed_seconds=elapsed)


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
