"""Candidate narrowing: which discovered files actually need edits."""

from __future__ import annotations

from typing import Any

from langchain_core.messages import HumanMessage, SystemMessage

from app.core.logging import get_logger
from app.core.nodes._helpers import _message_text
from infra.sandbox import RemoteEnvironment, SandboxError

logger = get_logger("core.narrowing")

_NARROW_SYSTEM = (
    "You decide which files must be edited to implement a change request.\n"
    "Reply with the absolute path of every file to modify, one per line, and nothing else.\n"
    "If no file needs to change, reply with an empty message."
)


def read_candidates(environment: RemoteEnvironment, candidates: list[str]) -> dict[str, str]:
    """Return ``{path: content}`` for every readable candidate.

    Unreadable files are logged and left out.
    """
    contents: dict[str, str] = {}
    for path in candidates:
        try:
            contents[path] = environment.read_file(path)
        except SandboxError as exc:
            logger.warning("narrowing.read: skipping %s: %s", path, exc)
    return contents


def parse_selected_paths(reply: str, repo_path: str) -> list[str]:
    """Keep non-empty lines that are paths inside the workspace root, in order, once each."""
    prefix = repo_path.rstrip("/") + "/"
    selected: list[str] = []
    for line in (reply or "").splitlines():
        path = line.strip().strip("`").strip()
        if path and path.startswith(prefix) and path not in selected:
            selected.append(path)
    return selected


def build_narrowing_prompt(request_text: str, contents: dict[str, str]) -> str:
    parts = [f"Change request: {request_text}", "", "Candidate files:"]
    for path, content in contents.items():
        parts += ["", f"=== {path} ===", content]
    parts += ["", "Which of these files need to be modified? One absolute path per line."]
    return "\n".join(parts)


def select_files_to_modify(
    environment: RemoteEnvironment,
    request_text: str,
    candidates: list[str],
    repo_path: str,
    selector_llm: Any = None,
    max_candidates: int = 20,
) -> list[str]:
    """Return the subset of *candidates* the model says should be edited.

    An empty list means nothing needs to change; a model failure is treated
    the same way.
    """
    if not candidates:
        return []
    if len(candidates) > max_candidates:
        logger.info("narrowing: capping %d candidates to %d", len(candidates), max_candidates)
        candidates = candidates[:max_candidates]

    contents = read_candidates(environment, candidates)
    if not contents:
        logger.info("narrowing: no readable candidates")
        return []

    try:
        llm = selector_llm
        if llm is None:
            from app.agents.models import get_llm
            llm = get_llm("selector")
        response = llm.invoke([
            SystemMessage(content=_NARROW_SYSTEM),
            HumanMessage(content=build_narrowing_prompt(request_text, contents)),
        ])
    except Exception as exc:
        logger.warning("narrowing: model error, nothing selected: %s", exc)
        return []

    selected = parse_selected_paths(_message_text(response), repo_path)
    logger.info("narrowing: %d of %d candidate(s) selected", len(selected), len(contents))
    return selected
