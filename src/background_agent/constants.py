"""Constants for the background agent retry harness."""

# Retry policy defaults
DEFAULT_MAX_ATTEMPTS = 3
MAX_ATTEMPTS_CEILING = 10

# Per-attempt budget defaults (enforced by the attempt, not the orchestrator)
DEFAULT_ATTEMPT_TIMEOUT_S = 300.0
DEFAULT_VERIFIER_TIMEOUT_S = 600.0

# Agent commands signal "turn budget exhausted" with this exit code
TURN_LIMIT_EXIT_CODE = 3

# Digest budget: 2000 chars keeps the error context well under ~500 tokens
DIGEST_CHAR_LIMIT = 2000
MAX_SHOWN_FAILURES = 5
SHORT_SUMMARY_WIDTH = 100

# Process exit codes for RunResult.final_status
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_TIMEOUT = 124
EXIT_SIGINT = 130
EXIT_SIGTERM = 143
