"""CLI entrypoint for the background agent retry harness."""

import logging
import signal
from pathlib import Path

import click
from dotenv import find_dotenv, load_dotenv

from background_agent.attempt import subprocess_attempt_factory
from background_agent.config import ConfigError, load_config
from background_agent.constants import (
    EXIT_FAILURE,
    EXIT_SIGINT,
    EXIT_SIGTERM,
    EXIT_SUCCESS,
    EXIT_TIMEOUT,
    MAX_ATTEMPTS_CEILING,
)
from background_agent.errors import TaskDefinitionError
from background_agent.models import (
    BUILD,
    FAILURE_CATEGORIES,
    LINT,
    SESSION_FAILED,
    SUCCEEDED,
    TEST,
    TIMED_OUT,
    RetryPolicy,
    RunResult,
)
from background_agent.observe import (
    CompositeObserver,
    LoggingObserver,
    MetricsObserver,
    WebhookObserver,
    format_run_summary,
)
from background_agent.orchestrator import RetryOrchestrator
from background_agent.summarizer import summarize_failure

# Load .env file on CLI startup
load_dotenv(find_dotenv(usecwd=True))

logger = logging.getLogger(__name__)


def exit_code_for(result: RunResult) -> int:
    """Map a RunResult to a process exit code (0, 124 for timeouts, else 1)."""
    if result.final_status == SUCCEEDED:
        return EXIT_SUCCESS
    if result.final_status == SESSION_FAILED and result.failure_variant == TIMED_OUT:
        return EXIT_TIMEOUT
    return EXIT_FAILURE


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _raise_on_sigterm(signum, frame):
    # Unwind through the orchestrator's finally blocks so the attempt is released
    raise SystemExit(EXIT_SIGTERM)


def _build_observer(webhook_url, run_label):
    metrics = MetricsObserver()
    observers = [LoggingObserver(), metrics]
    if webhook_url:
        observers.append(WebhookObserver(webhook_url, run_label=run_label))
    return CompositeObserver(observers), metrics


def _echo_result(result: RunResult, label: str) -> None:
    for line in format_run_summary(result, task_label=label):
        click.echo(line)


@click.group()
@click.version_option(package_name="background-agent")
def cli():
    """Background agent - bounded, verification-driven retries for coding agents."""
    pass


@cli.command()
@click.option(
    "--repo",
    required=True,
    type=click.Path(exists=True, file_okay=False),
    help="Target repository (the agent's workspace).",
)
@click.option("--task", "task_text", required=True, help="Instruction text for the agent.")
@click.option(
    "--max-attempts",
    type=click.IntRange(1, MAX_ATTEMPTS_CEILING),
    default=None,
    help="Maximum attempts (default: BACKGROUND_AGENT_MAX_ATTEMPTS or 3).",
)
@click.option(
    "--timeout",
    type=click.IntRange(30, 3600),
    default=None,
    help="Per-attempt timeout in seconds (default: BACKGROUND_AGENT_TIMEOUT_S or 300).",
)
@click.option("--agent-command", default=None, help="Agent command (default: AGENT_COMMAND).")
@click.option("--build", "build_cmd", default=None, help="Build verification command.")
@click.option("--test", "test_cmd", default=None, help="Test verification command.")
@click.option("--lint", "lint_cmd", default=None, help="Lint verification command.")
@click.option("--graph", is_flag=True, help="Run through the LangGraph trace harness.")
def run(repo, task_text, max_attempts, timeout, agent_command, build_cmd, test_cmd, lint_cmd, graph):
    """Run the agent on a repository with verification-driven retries."""
    from background_agent.verifiers import CommandVerifier, CompositeVerifier

    if not task_text.strip():
        raise click.BadParameter("must not be blank", param_hint="'--task'")

    try:
        config = load_config(require_agent=agent_command is None)
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(2)
    _configure_logging(config.log_level)

    repo_path = Path(repo).resolve()
    verifiers = [
        CommandVerifier(category, command)
        for category, command in ((BUILD, build_cmd), (TEST, test_cmd), (LINT, lint_cmd))
        if command
    ]
    verifier = None
    if len(verifiers) == 1:
        verifier = verifiers[0]
    elif verifiers:
        verifier = CompositeVerifier(verifiers)

    policy = RetryPolicy(
        max_attempts=max_attempts or config.max_attempts,
        verifier=verifier,
    )
    factory = subprocess_attempt_factory(
        agent_command or config.agent_command,
        repo_path,
        timeout_seconds=timeout or config.timeout_seconds,
    )
    observer, metrics = _build_observer(config.webhook_url, run_label=str(repo_path))
    orchestrator = RetryOrchestrator(factory, repo_path, observer=observer)

    previous_handler = signal.signal(signal.SIGTERM, _raise_on_sigterm)
    try:
        if graph:
            from background_agent.execution_graph import run_retry_graph
            result = run_retry_graph(orchestrator, task_text, policy)
        else:
            result = orchestrator.run(task_text, policy)
    except KeyboardInterrupt:
        click.echo("Interrupted, attempt released.", err=True)
        raise SystemExit(EXIT_SIGINT)
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
        observer.close()

    _echo_result(result, str(repo_path))
    logger.debug("Metrics: %s", metrics.get_metrics())
    raise SystemExit(exit_code_for(result))


@cli.command("run-task")
@click.argument("task_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory for JSON run reports.",
)
@click.option("--graph", is_flag=True, help="Run through the LangGraph trace harness.")
def run_task_command(task_file, output_dir, graph):
    """Run a YAML/JSON task definition."""
    from background_agent.task_runner import load_task_definition, run_task_definition

    try:
        config = load_config(require_agent=False)
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(2)
    _configure_logging(config.log_level)

    try:
        task_def = load_task_definition(Path(task_file))
    except TaskDefinitionError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(2)

    observer, _ = _build_observer(config.webhook_url, run_label=task_def["task_id"])
    try:
        result = run_task_definition(
            task_def,
            output_dir=Path(output_dir) if output_dir else None,
            use_graph=graph,
            observer=observer,
            task_file=Path(task_file),
        )
    except KeyboardInterrupt:
        click.echo("Interrupted, attempt released.", err=True)
        raise SystemExit(EXIT_SIGINT)
    finally:
        observer.close()

    _echo_result(result, task_def["task_id"])
    raise SystemExit(exit_code_for(result))


@cli.command()
@click.option(
    "--category",
    type=click.Choice(list(FAILURE_CATEGORIES)),
    required=True,
    help="Kind of output in the log.",
)
@click.argument("log_file", type=click.File("r"))
def summarize(category, log_file):
    """Print the agent-facing summary of a raw verifier log ('-' for stdin)."""
    click.echo(summarize_failure(category, log_file.read()))


@cli.command()
def check_config():
    """Check if required environment variables are configured."""
    try:
        config = load_config(require_agent=True)
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(1)
    click.echo("Configuration loaded successfully!")
    click.echo(f"  AGENT_COMMAND: {config.agent_command}")
    click.echo(f"  Max attempts: {config.max_attempts}")
    click.echo(f"  Timeout: {config.timeout_seconds:g}s")
    click.echo(f"  Webhook: {'[set]' if config.webhook_url else '[not set]'}")


if __name__ == "__main__":
    cli()
