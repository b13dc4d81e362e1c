"""LangGraph wrapper for the retry loop - trace harness only.

Wraps the orchestrator's primitives in a LangGraph StateGraph so that each
phase of every attempt shows up as a node in LangGraph Studio.

NO new orchestration logic. Same semantics as RetryOrchestrator.run, just
structured visibility.
"""

from typing import Any, Optional
from typing_extensions import TypedDict

from langgraph.graph import StateGraph, END

from background_agent.models import RetryPolicy, RunRecord, RunResult
from background_agent.orchestrator import RetryOrchestrator, decide_next


class RetryGraphState(TypedDict):
    """State for the retry graph."""
    original_instruction: str
    attempt: int
    instruction: str
    record: RunRecord
    result: Optional[RunResult]
    # Wiring references (passed through state)
    policy: RetryPolicy
    orchestrator: Any


# --- Graph Nodes ---

def node_prepare(state: RetryGraphState) -> dict:
    """Announce the next attempt and build its instruction."""
    attempt = state["attempt"] + 1
    instruction = state["orchestrator"].begin_attempt(
        state["original_instruction"],
        state["record"],
        attempt,
        state["policy"],
    )
    return {"attempt": attempt, "instruction": instruction}


def node_execute(state: RetryGraphState) -> dict:
    """Run a fresh execution attempt."""
    record = state["record"]
    outcome = state["orchestrator"].execute_attempt(state["instruction"])
    record.add_execution(outcome)
    return {"record": record}


def node_verify(state: RetryGraphState) -> dict:
    """Verify the workspace if the attempt succeeded and a verifier is set."""
    record = state["record"]
    policy = state["policy"]
    result = None
    if record.execution_outcomes[-1].succeeded and policy.verifier is not None:
        result = state["orchestrator"].verify_attempt(record, policy, state["attempt"])
    return {"record": record, "result": result}


def node_decide(state: RetryGraphState) -> dict:
    """Terminate or go around again."""
    result = state["result"]
    if result is None:
        result = decide_next(state["record"], state["policy"])
    return {"result": result}


def node_finish(state: RetryGraphState) -> dict:
    """Emit the final event."""
    return {"result": state["orchestrator"].finish(state["result"])}


# --- Conditional Edges ---

def should_retry(state: RetryGraphState) -> str:
    """Loop back for another attempt until a result exists."""
    if state["result"] is None:
        return "retry"
    return "finish"


# --- Graph Builder ---

def build_retry_graph() -> StateGraph:
    """
    Build the retry graph.

    Flow:
        prepare -> execute -> verify -> decide -> (done?) -> finish -> end
                                               -> (retry) -> prepare
    """
    graph = StateGraph(RetryGraphState)

    graph.add_node("prepare", node_prepare)
    graph.add_node("execute", node_execute)
    graph.add_node("verify", node_verify)
    graph.add_node("decide", node_decide)
    graph.add_node("finish", node_finish)

    graph.set_entry_point("prepare")

    graph.add_edge("prepare", "execute")
    graph.add_edge("execute", "verify")
    graph.add_edge("verify", "decide")
    graph.add_conditional_edges(
        "decide",
        should_retry,
        {
            "retry": "prepare",
            "finish": "finish",
        }
    )
    graph.add_edge("finish", END)

    return graph


def run_retry_graph(
    orchestrator: RetryOrchestrator,
    original_instruction: str,
    policy: Optional[RetryPolicy] = None,
) -> RunResult:
    """
    Run the retry graph and return the final RunResult.

    This is the traced equivalent of RetryOrchestrator.run().
    """
    if not original_instruction or not original_instruction.strip():
        raise ValueError("original_instruction must be non-empty")
    if policy is None:
        policy = RetryPolicy()

    compiled = build_retry_graph().compile()

    initial_state: RetryGraphState = {
        "original_instruction": original_instruction,
        "attempt": 0,
        "instruction": "",
        "record": RunRecord(max_attempts=policy.max_attempts),
        "result": None,
        "policy": policy,
        "orchestrator": orchestrator,
    }

    # Four nodes per attempt plus the finish node
    config = {"recursion_limit": 4 * policy.max_attempts + 5}
    final_state = compiled.invoke(initial_state, config=config)
    return final_state["result"]


# Pre-compiled graph for Studio discovery
retry_graph = build_retry_graph().compile()
