"""Configuration loading for the background agent CLI."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from background_agent.constants import (
    DEFAULT_ATTEMPT_TIMEOUT_S,
    DEFAULT_MAX_ATTEMPTS,
    MAX_ATTEMPTS_CEILING,
)


@dataclass
class Config:
    """Application configuration loaded from environment."""

    agent_command: Optional[str]
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    timeout_seconds: float = DEFAULT_ATTEMPT_TIMEOUT_S
    webhook_url: Optional[str] = None
    log_level: str = "INFO"


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def load_config(require_agent: bool = True) -> Config:
    """
    Load configuration from environment variables.

    Args:
        require_agent: If True, AGENT_COMMAND must be set.

    Returns:
        Config object.

    Raises:
        ConfigError: If required vars are missing or numeric vars don't parse.
    """
    load_dotenv(find_dotenv(usecwd=True))

    problems = []

    agent_command = os.environ.get("AGENT_COMMAND") or None
    if require_agent and not agent_command:
        problems.append("AGENT_COMMAND is not set")

    max_attempts = DEFAULT_MAX_ATTEMPTS
    raw_attempts = os.environ.get("BACKGROUND_AGENT_MAX_ATTEMPTS")
    if raw_attempts:
        try:
            max_attempts = int(raw_attempts)
        except ValueError:
            problems.append(f"BACKGROUND_AGENT_MAX_ATTEMPTS is not an integer: {raw_attempts}")
        else:
            if not 1 <= max_attempts <= MAX_ATTEMPTS_CEILING:
                problems.append(
                    f"BACKGROUND_AGENT_MAX_ATTEMPTS must be between 1 and {MAX_ATTEMPTS_CEILING}"
                )

    timeout_seconds = DEFAULT_ATTEMPT_TIMEOUT_S
    raw_timeout = os.environ.get("BACKGROUND_AGENT_TIMEOUT_S")
    if raw_timeout:
        try:
            timeout_seconds = float(raw_timeout)
        except ValueError:
            problems.append(f"BACKGROUND_AGENT_TIMEOUT_S is not a number: {raw_timeout}")

    if problems:
        raise ConfigError(
            "Invalid configuration:\n"
            + "\n".join(f"  - {p}" for p in problems)
            + "\nSet them in your environment or create a .env file."
        )

    return Config(
        agent_command=agent_command,
        max_attempts=max_attempts,
        timeout_seconds=timeout_seconds,
        webhook_url=os.environ.get("BACKGROUND_AGENT_WEBHOOK_URL") or None,
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    )
