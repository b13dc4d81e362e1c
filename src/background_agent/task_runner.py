"""Thin task runner.

Loads a task definition, wires attempts and verifiers, runs the retry
orchestrator, and optionally writes a JSON report.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import jsonschema
import yaml

from background_agent.attempt import subprocess_attempt_factory
from background_agent.constants import (
    DEFAULT_ATTEMPT_TIMEOUT_S,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_VERIFIER_TIMEOUT_S,
    MAX_ATTEMPTS_CEILING,
    TURN_LIMIT_EXIT_CODE,
)
from background_agent.errors import TaskDefinitionError
from background_agent.models import FAILURE_CATEGORIES, RetryPolicy, RunResult
from background_agent.observe import Observer, run_result_payload
from background_agent.orchestrator import RetryOrchestrator
from background_agent.verifiers import CommandVerifier, CompositeVerifier, Verifier

logger = logging.getLogger(__name__)


TASK_DEFINITION_SCHEMA = {
    "type": "object",
    "required": ["task_id", "instruction", "workspace", "agent_command"],
    "properties": {
        "task_id": {"type": "string", "minLength": 1},
        "instruction": {"type": "string", "pattern": "\\S"},
        "workspace": {"type": "string", "minLength": 1},
        "agent_command": {
            "oneOf": [
                {"type": "string", "minLength": 1},
                {"type": "array", "items": {"type": "string"}, "minItems": 1},
            ]
        },
        "max_attempts": {"type": "integer", "minimum": 1, "maximum": MAX_ATTEMPTS_CEILING},
        "timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
        "turn_limit_exit_code": {"type": ["integer", "null"]},
        "verifiers": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["category", "command"],
                "properties": {
                    "category": {"enum": list(FAILURE_CATEGORIES)},
                    "command": {
                        "oneOf": [
                            {"type": "string", "minLength": 1},
                            {"type": "array", "items": {"type": "string"}, "minItems": 1},
                        ]
                    },
                    "name": {"type": "string"},
                    "timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
                },
                "additionalProperties": False,
            },
        },
    },
    "additionalProperties": False,
}


def load_task_definition(task_file: Path) -> Dict[str, Any]:
    """
    Load a task definition from YAML or JSON and validate it.

    Required fields:
        - task_id: str
        - instruction: str (opaque task text for the agent)
        - workspace: str (repository path the agent mutates)
        - agent_command: str | list[str]

    Optional fields:
        - max_attempts: int (default 3, at most 10)
        - timeout_seconds: float (per attempt, default 300)
        - turn_limit_exit_code: int | null
        - verifiers: list of {category, command, name?, timeout_seconds?}
    """
    task_file = Path(task_file)
    content = task_file.read_text()

    try:
        if task_file.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content)
        elif task_file.suffix == ".json":
            data = json.loads(content)
        else:
            raise TaskDefinitionError(
                f"Unsupported file type: {task_file.suffix}. Use .yaml, .yml, or .json"
            )
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise TaskDefinitionError(f"Could not parse {task_file.name}: {e}") from e

    try:
        jsonschema.validate(instance=data, schema=TASK_DEFINITION_SCHEMA)
    except jsonschema.ValidationError as e:
        error_msg = f"Invalid task definition: {e.message}"
        if e.absolute_path:
            error_msg += f" at path: {list(e.absolute_path)}"
        raise TaskDefinitionError(error_msg) from e

    return data


def build_verifier(entries: Iterable[Dict[str, Any]]) -> Optional[Verifier]:
    """Build a verifier from definition entries; None when there are none."""
    verifiers = [
        CommandVerifier(
            category=entry["category"],
            command=entry["command"],
            timeout_seconds=entry.get("timeout_seconds", DEFAULT_VERIFIER_TIMEOUT_S),
            name=entry.get("name"),
        )
        for entry in entries
    ]
    if not verifiers:
        return None
    if len(verifiers) == 1:
        return verifiers[0]
    return CompositeVerifier(verifiers)


def build_policy(task_def: Dict[str, Any]) -> RetryPolicy:
    """Construct the RetryPolicy for a task definition."""
    return RetryPolicy(
        max_attempts=task_def.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
        verifier=build_verifier(task_def.get("verifiers", [])),
    )


def build_orchestrator(
    task_def: Dict[str, Any],
    observer: Optional[Observer] = None,
) -> RetryOrchestrator:
    """Wire a subprocess-backed orchestrator for a task definition."""
    workspace = Path(task_def["workspace"])
    factory = subprocess_attempt_factory(
        task_def["agent_command"],
        workspace,
        timeout_seconds=task_def.get("timeout_seconds", DEFAULT_ATTEMPT_TIMEOUT_S),
        turn_limit_exit_code=task_def.get("turn_limit_exit_code", TURN_LIMIT_EXIT_CODE),
    )
    return RetryOrchestrator(factory, workspace, observer=observer)


def write_run_report(
    task_def: Dict[str, Any],
    result: RunResult,
    task_file: Optional[Path],
    output_dir: Path,
    start_time: datetime,
    end_time: datetime,
) -> Path:
    """
    Write a structured run report to disk.

    Report format: JSON with every per-attempt outcome (no raw verifier detail).
    Filename: {task_id}_{timestamp}.json
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = end_time.strftime("%Y%m%d_%H%M%S")
    report_path = output_dir / f"{task_def['task_id']}_{timestamp}.json"

    report = {
        "task_id": task_def["task_id"],
        "task_file": str(task_file) if task_file else None,
        "workspace": task_def["workspace"],
        "max_attempts": task_def.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
        **run_result_payload(result),
        "start_time": start_time.isoformat(),
        "end_time": end_time.isoformat(),
        "duration_seconds": (end_time - start_time).total_seconds(),
    }

    report_path.write_text(json.dumps(report, indent=2))
    return report_path


def run_task_definition(
    task_def: Dict[str, Any],
    output_dir: Optional[Path] = None,
    use_graph: bool = False,
    observer: Optional[Observer] = None,
    task_file: Optional[Path] = None,
) -> RunResult:
    """
    Run an already-loaded task definition.

    Args:
        task_def: Validated definition (see load_task_definition)
        output_dir: Write a JSON report here when given
        use_graph: Run through the LangGraph trace harness instead of the plain loop
        observer: Receives run events

    Returns:
        Final RunResult
    """
    orchestrator = build_orchestrator(task_def, observer=observer)
    policy = build_policy(task_def)

    start_time = datetime.now()
    if use_graph:
        from background_agent.execution_graph import run_retry_graph
        result = run_retry_graph(orchestrator, task_def["instruction"], policy)
    else:
        result = orchestrator.run(task_def["instruction"], policy)
    end_time = datetime.now()

    if output_dir is not None:
        report_path = write_run_report(
            task_def, result, task_file, Path(output_dir), start_time, end_time
        )
        logger.info("Run report written to %s", report_path)

    return result


def run_task(
    task_file: Path,
    output_dir: Optional[Path] = None,
    use_graph: bool = False,
    observer: Optional[Observer] = None,
) -> RunResult:
    """Main entry point: load the task file, run it, write a report."""
    task_def = load_task_definition(task_file)
    return run_task_definition(
        task_def,
        output_dir=output_dir,
        use_graph=use_graph,
        observer=observer,
        task_file=Path(task_file),
    )
