"""LangGraph orchestrator for file discovery and publishing.

Two small state machines:

Discovery::

    analyze_task → select_tool → execute_search → END

Publish (resumable at any step)::

    START ─┬→ name_branch → create_commit → push_branch → open_pull_request → END
           └→ (resume_from) ─────────────┘
    any step failure → END

Collaborators (environment, forge client, models, clock) are passed through
``config["configurable"]`` rather than stored in the state.
"""

from __future__ import annotations

import asyncio
from functools import lru_cache
from typing import Any, Callable

from langgraph.graph import END, START, StateGraph

from app.core.logging import get_logger
from app.core.nodes import (
    analyze_task_node,
    branch_node,
    commit_node,
    execute_search_node,
    pull_request_node,
    push_node,
    select_tool_node,
)
from app.core.state import DiscoveryState, PublishState, PublishStep
from infra.forge import ForgeClient
from infra.sandbox import RemoteEnvironment

logger = get_logger("core.orchestrator")

# Node names must not collide with state keys ("branch", "commit").
PUBLISH_NODES: dict[PublishStep, str] = {
    PublishStep.BRANCH: "name_branch",
    PublishStep.COMMIT: "create_commit",
    PublishStep.PUSH: "push_branch",
    PublishStep.PULL_REQUEST: "open_pull_request",
}


# ---------------------------------------------------------------------------
# Discovery graph
# ---------------------------------------------------------------------------


def build_discovery_graph() -> StateGraph:
    graph = StateGraph(DiscoveryState)

    graph.add_node("analyze_task", analyze_task_node)
    graph.add_node("select_tool", select_tool_node)
    graph.add_node("execute_search", execute_search_node)

    graph.set_entry_point("analyze_task")
    graph.add_edge("analyze_task", "select_tool")
    graph.add_edge("select_tool", "execute_search")
    graph.add_edge("execute_search", END)

    return graph


@lru_cache(maxsize=1)
def compile_discovery_graph():
    return build_discovery_graph().compile()


def discover_files(
    environment: RemoteEnvironment,
    request_text: str,
    repo_path: str,
    selector_llm: Any = None,
) -> DiscoveryState:
    """Run discovery to completion.  Never raises: failures yield no candidates."""
    initial = DiscoveryState(request_text=request_text, repo_path=repo_path)
    config = {"configurable": {"environment": environment, "selector_llm": selector_llm}}
    try:
        final = compile_discovery_graph().invoke(initial.model_dump(), config=config)
    except Exception as exc:
        logger.error("discovery: aborted, no candidates: %s", exc)
        return initial
    state = DiscoveryState(**final)
    logger.info(
        "discovery: tool=%s query=%r fallback=%s → %d file(s)",
        state.selected_tool.value if state.selected_tool else "-",
        state.search_query,
        state.used_fallback,
        len(state.found_files),
    )
    return state


async def run_discovery(
    environment: RemoteEnvironment,
    request_text: str,
    repo_path: str,
    selector_llm: Any = None,
) -> DiscoveryState:
    return await asyncio.to_thread(discover_files, environment, request_text, repo_path, selector_llm)


# ---------------------------------------------------------------------------
# Publish graph
# ---------------------------------------------------------------------------


def _route_publish_entry(state: PublishState) -> str:
    if state.resume_from in PUBLISH_NODES:
        return PUBLISH_NODES[state.resume_from]
    return PUBLISH_NODES[PublishStep.BRANCH]


def _route_after_branch(state: PublishState) -> str:
    if state.failed_step is not None:
        return "stopped"
    return PUBLISH_NODES[PublishStep.COMMIT]


def _route_after_commit(state: PublishState) -> str:
    if state.failed_step is not None:
        return "stopped"
    return PUBLISH_NODES[PublishStep.PUSH]


def _route_after_push(state: PublishState) -> str:
    if state.failed_step is not None:
        return "stopped"
    return PUBLISH_NODES[PublishStep.PULL_REQUEST]


def build_publish_graph() -> StateGraph:
    graph = StateGraph(PublishState)

    graph.add_node(PUBLISH_NODES[PublishStep.BRANCH], branch_node)
    graph.add_node(PUBLISH_NODES[PublishStep.COMMIT], commit_node)
    graph.add_node(PUBLISH_NODES[PublishStep.PUSH], push_node)
    graph.add_node(PUBLISH_NODES[PublishStep.PULL_REQUEST], pull_request_node)

    graph.add_conditional_edges(
        START,
        _route_publish_entry,
        {name: name for name in PUBLISH_NODES.values()},
    )
    graph.add_conditional_edges(
        PUBLISH_NODES[PublishStep.BRANCH],
        _route_after_branch,
        {PUBLISH_NODES[PublishStep.COMMIT]: PUBLISH_NODES[PublishStep.COMMIT], "stopped": END},
    )
    graph.add_conditional_edges(
        PUBLISH_NODES[PublishStep.COMMIT],
        _route_after_commit,
        {PUBLISH_NODES[PublishStep.PUSH]: PUBLISH_NODES[PublishStep.PUSH], "stopped": END},
    )
    graph.add_conditional_edges(
        PUBLISH_NODES[PublishStep.PUSH],
        _route_after_push,
        {PUBLISH_NODES[PublishStep.PULL_REQUEST]: PUBLISH_NODES[PublishStep.PULL_REQUEST], "stopped": END},
    )
    graph.add_edge(PUBLISH_NODES[PublishStep.PULL_REQUEST], END)

    return graph


@lru_cache(maxsize=1)
def compile_publish_graph():
    return build_publish_graph().compile()


def publish(
    state: PublishState,
    environment: RemoteEnvironment,
    forge: ForgeClient,
    clock: Callable[[], float] | None = None,
) -> PublishState:
    """Run the publish graph from ``state.resume_from`` (or the first step).

    Never raises: the returned state carries either the PR or
    ``failed_step`` + ``error``.
    """
    config = {"configurable": {"environment": environment, "forge": forge, "clock": clock}}
    logger.info(
        "publish: %s/%s from %s",
        state.upstream_owner, state.upstream_repo,
        (state.resume_from or PublishStep.BRANCH).value,
    )
    try:
        final = compile_publish_graph().invoke(state.model_dump(), config=config)
    except Exception as exc:
        logger.exception("publish: unexpected error")
        return state.model_copy(update={
            "failed_step": state.resume_from or PublishStep.BRANCH,
            "error": str(exc),
        })

    result = PublishState(**final)
    if result.succeeded:
        logger.info("publish: PR #%s %s", result.pr_number, result.pr_url)
    else:
        logger.warning("publish: failed at %s: %s", result.failed_step, result.error)
    return result


def prepare_retry(state: PublishState) -> PublishState:
    """Return a copy of a failed publish state that resumes at its failed step."""
    return state.model_copy(update={
        "resume_from": state.failed_step,
        "failed_step": None,
        "error": "",
    })


async def run_publish(
    state: PublishState,
    environment: RemoteEnvironment,
    forge: ForgeClient,
    clock: Callable[[], float] | None = None,
) -> PublishState:
    return await asyncio.to_thread(publish, state, environment, forge, clock)
