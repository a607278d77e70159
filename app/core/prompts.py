"""Generation prompt assembly.

:func:`build_generation_prompt` produces the single instruction given to the
generator model.  Whatever the wording, it always carries:

- the repository URL, the request and its keywords,
- the full content of every file selected for modification,
- the candidate list from discovery,
- files related to the selected ones through relative imports (max 3 each),
- the project tree (first ``FILE_TREE_LIMIT`` files),
- the absolute-path convention of the workspace,
- the JSON schema of :class:`~app.core.state.Generation`.
"""

from __future__ import annotations

import json
import posixpath
import re
import shlex

from app.core.logging import get_logger
from app.core.state import Generation
from infra.sandbox import RemoteEnvironment

logger = get_logger("core.prompts")

MAX_RELATED_PER_FILE = 3

_IMPORT_RE = re.compile(r"""(?:from|import|require)\s*\(?\s*['"]([^'"]+)['"]""")
_SOURCE_EXT_RE = re.compile(r"\.(ts|tsx|js|jsx|mjs|cjs)$")


def get_file_tree(environment: RemoteEnvironment, repo_path: str, limit: int = 100) -> list[str]:
    """Return up to *limit* repository files, relative to *repo_path*.

    An unavailable listing is logged and returned as an empty tree.
    """
    root = repo_path.rstrip("/")
    command = (
        f"find {shlex.quote(root)} -type f "
        "-not -path '*/node_modules/*' -not -path '*/.git/*' "
        f"| head -{int(limit)}"
    )
    result = environment.run(command, timeout=30)
    if not result.ok:
        logger.warning("prompts.tree: listing failed (exit %d)", result.exit_code)
        return []
    return [
        line.strip().removeprefix(root + "/")
        for line in result.stdout.splitlines()
        if line.strip()
    ]


def detect_related_files(target: str, content: str, all_files: list[str], repo_path: str) -> list[str]:
    """Files from *all_files* that *target* imports through a relative path.

    Package imports are ignored.  At most ``MAX_RELATED_PER_FILE`` are returned.
    """
    target_rel = target.removeprefix(repo_path.rstrip("/") + "/")
    base_dir = posixpath.dirname(target_rel)
    related: list[str] = []

    for spec in _IMPORT_RE.findall(content):
        if not spec.startswith((".", "/")):
            continue
        wanted = _SOURCE_EXT_RE.sub("", posixpath.normpath(posixpath.join(base_dir, spec)).lstrip("/"))
        for path in all_files:
            stem = _SOURCE_EXT_RE.sub("", path)
            if stem in (wanted, f"{wanted}/index") and path != target_rel and path not in related:
                related.append(path)
                break
        if len(related) >= MAX_RELATED_PER_FILE:
            break
    return related


def generation_schema() -> dict:
    return Generation.model_json_schema(by_alias=True)


def build_generation_prompt(
    repo_url: str,
    request_text: str,
    keywords: list[str],
    selected_files: dict[str, str],
    candidates: list[str],
    file_tree: list[str],
    repo_path: str,
) -> str:
    """Return the full generation prompt.

    Args:
        selected_files: ``{absolute path: content}`` of the files to modify.
        candidates:     Every path discovery returned.
        file_tree:      Repository files relative to *repo_path*.
    """
    root = repo_path.rstrip("/")

    sections: list[str] = [
        "You are an expert software developer modifying an existing codebase.",
        "",
        f"REPOSITORY: {repo_url}",
        f"USER REQUEST: {request_text}",
        f"SEARCH KEYWORDS: {', '.join(keywords)}",
        "",
        "=== FILES TO MODIFY ===",
    ]
    for path, content in selected_files.items():
        sections += [f"**{path}**", "```", content, "```", ""]

    sections.append("=== CANDIDATE FILES ANALYZED ===")
    sections += [f"  {i}. {path}" for i, path in enumerate(candidates, 1)] or ["  (none)"]
    sections.append("")

    related: list[str] = []
    for path, content in selected_files.items():
        for rel in detect_related_files(path, content, file_tree, root):
            if rel not in related:
                related.append(rel)
    if related:
        sections.append("=== RELATED FILES (imported by the files above) ===")
        sections += [f"  {i}. {path}" for i, path in enumerate(related, 1)]
        sections.append("Keep these working when changing their imports.")
        sections.append("")

    sections.append(f"=== PROJECT STRUCTURE (first {len(file_tree)} files) ===")
    sections += file_tree
    sections.append("")

    sections += [
        "INSTRUCTIONS:",
        "1. Make minimal, surgical changes: only modify what the request needs.",
        "2. Match the existing code style (indentation, quotes, semicolons, imports).",
        "3. Do not break existing functionality or imports.",
        f"4. Use absolute paths starting with {root}/ for every operation.",
        "5. Prefer 'updateFile' with exact search/replace snippets for small changes,",
        "   'rewriteFile' for large ones, 'createFile' only for new files.",
        "6. Only add shellCommands when strictly necessary (e.g. installing a new dependency).",
        "",
        "Respond with ONLY a JSON object matching this schema:",
        json.dumps(generation_schema(), indent=2),
    ]
    return "\n".join(sections)
