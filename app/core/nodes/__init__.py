"""LangGraph node implementations, split into per-graph modules.

Public node functions are re-exported here so the orchestrator can import
them from one place: ``from app.core.nodes import commit_node``.
"""

# -- Discovery graph --------------------------------------------------------

from .discovery import (  # noqa: F401
    analyze_task_node,
    build_search_command,
    execute_search_node,
    fallback_query,
    select_tool_node,
)

# -- Publish graph ----------------------------------------------------------

from .publish import (  # noqa: F401
    PublishError,
    branch_name,
    branch_node,
    commit_node,
    pr_body,
    pull_request_node,
    push_node,
    slugify,
)

__all__ = [
    # Discovery
    "analyze_task_node",
    "select_tool_node",
    "execute_search_node",
    "build_search_command",
    "fallback_query",
    # Publish
    "branch_node",
    "commit_node",
    "push_node",
    "pull_request_node",
    "PublishError",
    "branch_name",
    "pr_body",
    "slugify",
]
