"""Discovery nodes: analyze_task → select_tool → execute_search.

The environment (``environment``) and optionally the selector model
(``selector_llm``) are passed through ``config["configurable"]``.  None of the
nodes raise: model errors fall back to a keyword grep and search errors yield
no candidates.
"""

from __future__ import annotations

import posixpath
import shlex
from typing import assert_never

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig

from app.core.config import get_settings
from app.core.keywords import extract_keywords
from app.core.logging import get_logger
from app.core.state import DiscoveryState, SearchTool

from ._helpers import _configurable, _message_text, _parse_json_object

logger = get_logger("core.nodes.discovery")

EXCLUDED_DIRS = ("node_modules", ".git", "dist")

_SELECT_TOOL_SYSTEM = (
    "You pick the search strategy that finds the source files relevant to a change request.\n"
    "Tools:\n"
    '  "grep"  — recursive content search for a fixed string or basic regex\n'
    '  "glob"  — file name pattern, e.g. "*.ts" or "math.*"\n'
    '  "regex" — recursive extended-regex content search\n'
    'Reply with ONLY a JSON object: {"tool": "grep" | "glob" | "regex", "query": "<search query>"}'
)


def fallback_query(keywords: list[str]) -> str:
    """Keywords joined by grep's basic-regex alternation operator."""
    return "\\|".join(keywords)


def build_search_command(tool: SearchTool, query: str, repo_path: str) -> str:
    """Map *tool* and *query* to a shell command that prints one path per line."""
    root = shlex.quote(repo_path)
    match tool:
        case SearchTool.GREP | SearchTool.REGEX:
            excludes = " ".join(f"--exclude-dir={d}" for d in EXCLUDED_DIRS)
            flags = "-rlE" if tool is SearchTool.REGEX else "-rl"
            return f"grep {flags} {excludes} -e {shlex.quote(query)} {root}"
        case SearchTool.GLOB:
            pattern = posixpath.basename(query.rstrip("/")) or query
            prunes = " ".join(f"-not -path {shlex.quote(f'*/{d}/*')}" for d in EXCLUDED_DIRS)
            return f"find {root} -type f -name {shlex.quote(pattern)} {prunes}"
        case _:
            assert_never(tool)


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


def analyze_task_node(state: DiscoveryState, config: RunnableConfig) -> dict:
    keywords = sorted(extract_keywords(state.request_text))
    logger.info("discovery.analyze: keywords=%s", keywords)
    return {"keywords": keywords}


def select_tool_node(state: DiscoveryState, config: RunnableConfig) -> dict:
    fallback = {
        "selected_tool": SearchTool.GREP,
        "search_query": fallback_query(state.keywords),
        "used_fallback": True,
    }

    try:
        llm = _configurable(config, "selector_llm")
        if llm is None:
            from app.agents.models import get_llm
            llm = get_llm("selector")
        response = llm.invoke([
            SystemMessage(content=_SELECT_TOOL_SYSTEM),
            HumanMessage(content=(
                f"Change request: {state.request_text}\n"
                f"Keywords: {', '.join(state.keywords) or '(none)'}"
            )),
        ])
    except Exception as exc:
        logger.warning("discovery.select_tool: model error, using keyword grep: %s", exc)
        return fallback

    parsed = _parse_json_object(_message_text(response))
    if not parsed:
        logger.warning("discovery.select_tool: unparseable reply, using keyword grep")
        return fallback

    tool = str(parsed.get("tool", "")).strip().lower()
    query = str(parsed.get("query", "")).strip()
    if tool not in {t.value for t in SearchTool} or not query:
        logger.warning("discovery.select_tool: invalid choice %r, using keyword grep", parsed)
        return fallback

    logger.info("discovery.select_tool: %s %r", tool, query)
    return {"selected_tool": SearchTool(tool), "search_query": query, "used_fallback": False}


def execute_search_node(state: DiscoveryState, config: RunnableConfig) -> dict:
    environment = _configurable(config, "environment")
    if environment is None or not state.search_query or state.selected_tool is None:
        logger.info("discovery.search: nothing to search")
        return {"found_files": []}

    command = build_search_command(state.selected_tool, state.search_query, state.repo_path)
    timeout = _configurable(config, "search_timeout") or get_settings().search_timeout_seconds
    try:
        result = environment.run(command, timeout=timeout)
    except Exception as exc:
        logger.warning("discovery.search: environment error: %s", exc)
        return {"found_files": []}

    if not result.ok:
        logger.info("discovery.search: exit %d, no candidates", result.exit_code)
        return {"found_files": []}

    found: list[str] = []
    for line in result.stdout.splitlines():
        path = line.strip()
        if path and "node_modules" not in path and path not in found:
            found.append(path)

    logger.info("discovery.search: %d candidate(s)", len(found))
    return {"found_files": found}
