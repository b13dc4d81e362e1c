"""Exception types for the retry harness.

Use isinstance checks instead of matching on message text.
"""

from typing import Optional


class BackgroundAgentError(Exception):
    """Base class for harness errors."""
    pass


class InvalidPolicyError(BackgroundAgentError, ValueError):
    """Raised when a RetryPolicy is constructed with out-of-range values."""
    pass


class TaskDefinitionError(BackgroundAgentError, ValueError):
    """Raised when a task definition file is missing fields or malformed."""
    pass


class TurnLimitError(BackgroundAgentError):
    """Raised by an attempt that ran out of tool-use turns."""

    def __init__(self, max_turns: int):
        super().__init__(
            f"Maximum turns ({max_turns}) reached. "
            "This may indicate an infinite loop. Check tool implementations."
        )
        self.max_turns = max_turns


class SessionTimeoutError(BackgroundAgentError):
    """Raised by an attempt that exceeded its wall-clock budget."""

    def __init__(self, timeout_seconds: Optional[float] = None):
        if timeout_seconds:
            message = f"Session timed out after {timeout_seconds:g}s"
        else:
            message = "Session timeout"
        super().__init__(message)
        self.timeout_seconds = timeout_seconds
