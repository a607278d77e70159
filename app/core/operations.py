"""Operation application engine.

Applies the file operations of a :class:`~app.core.state.Generation` to the
working copy inside a workspace's environment, in the order given, then runs
the generated shell commands.

``updateFile`` pairs are applied left to right on one buffer.  Each pair is
tried as a regular expression first (all matches replaced); when the pattern
does not compile or matches nothing, the ``search`` text is replaced as a
literal substring.  A pair that matches neither way leaves the buffer
unchanged and is reported, never raised.
"""

from __future__ import annotations

import posixpath
import re
import shlex
from dataclasses import dataclass, field
from typing import assert_never

from app.core.logging import get_logger
from app.core.state import (
    AppliedOperation,
    CreateFile,
    DeleteFile,
    FileOperation,
    Generation,
    RewriteFile,
    SearchReplace,
    UpdateFile,
)
from infra.sandbox import CommandResult, RemoteEnvironment, SandboxError

logger = get_logger("core.operations")


class OperationError(Exception):
    """A file operation could not be applied.  Aborts the rest of the batch."""


@dataclass
class OperationReport:
    """What happened when one operation was applied."""

    type: str
    path: str
    unmatched: list[str] = field(default_factory=list)
    """``search`` strings of ``updateFile`` pairs that matched nothing."""


@dataclass
class CommandReport:
    command: str
    result: CommandResult


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def resolve_operation_path(path: str, repo_path: str) -> str:
    """Return *path* as an absolute path below *repo_path*.

    Relative paths are taken relative to the repository root, and so are
    absolute paths that do not start with it (``/src/a.ts`` is the
    repository's ``src/a.ts``).

    Raises:
        OperationError: if the path is empty or escapes the repository.
    """
    raw = (path or "").strip()
    if not raw:
        raise OperationError("File operation has an empty path")

    root = posixpath.normpath(repo_path)
    if raw == root or raw.startswith(root + "/"):
        candidate = raw
    else:
        candidate = posixpath.join(root, raw.lstrip("/"))
    resolved = posixpath.normpath(candidate)
    if resolved != root and not resolved.startswith(root + "/"):
        raise OperationError(f"Path {path!r} is outside the repository {root}")
    return resolved


def relative_path(path: str, repo_path: str) -> str:
    return posixpath.relpath(path, posixpath.normpath(repo_path))


# ---------------------------------------------------------------------------
# Search / replace
# ---------------------------------------------------------------------------


def replace_pair(content: str, pair: SearchReplace) -> tuple[str, str | None]:
    """Apply one pair to *content*.

    Returns ``(new_content, mode)`` where *mode* is ``"regex"``, ``"literal"``
    or ``None`` when nothing matched.
    """
    if not pair.search:
        return content, None

    try:
        pattern = re.compile(pair.search)
    except re.error:
        pattern = None

    if pattern is not None:
        # The replacement is inserted verbatim; backslashes and group
        # references in it are not expanded.
        updated, count = pattern.subn(lambda _match: pair.replace, content)
        if count:
            return updated, "regex"

    if pair.search in content:
        return content.replace(pair.search, pair.replace), "literal"

    return content, None


def apply_search_replace(content: str, pairs: list[SearchReplace]) -> tuple[str, list[str]]:
    """Apply *pairs* in order, each on the result of the previous one.

    Returns the final content and the ``search`` strings that matched nothing.
    """
    unmatched: list[str] = []
    for pair in pairs:
        content, mode = replace_pair(content, pair)
        if mode is None:
            unmatched.append(pair.search)
    return content, unmatched


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def apply_operation(environment: RemoteEnvironment, operation: FileOperation) -> OperationReport:
    """Apply one operation whose ``path`` is already absolute.

    Raises:
        OperationError: on any filesystem failure.
    """
    report = OperationReport(type=operation.type, path=operation.path)
    try:
        match operation:
            case CreateFile() | RewriteFile():
                environment.write_file(operation.path, operation.content)

            case UpdateFile():
                original = environment.read_file(operation.path)
                updated, report.unmatched = apply_search_replace(original, operation.search_replace)
                for search in report.unmatched:
                    logger.warning("operations.update: no match in %s for %r", operation.path, search[:80])
                environment.write_file(operation.path, updated)

            case DeleteFile():
                result = environment.run(f"rm -f {shlex.quote(operation.path)}", timeout=30)
                if not result.ok:
                    raise OperationError(f"cannot delete {operation.path}: {result.stderr.strip()}")

            case _:
                assert_never(operation)
    except SandboxError as exc:
        raise OperationError(f"{operation.type} {operation.path} failed: {exc}") from exc

    logger.info("operations.apply: %s %s", operation.type, operation.path)
    return report


def apply_generation(
    environment: RemoteEnvironment,
    generation: Generation,
    repo_path: str,
) -> list[OperationReport]:
    """Resolve and apply every file operation of *generation* in order.

    The first :class:`OperationError` aborts the remaining operations.
    """
    reports: list[OperationReport] = []
    for operation in generation.file_operations:
        resolved = resolve_operation_path(operation.path, repo_path)
        reports.append(apply_operation(environment, operation.model_copy(update={"path": resolved})))
    return reports


def applied_operations(reports: list[OperationReport], repo_path: str) -> list[AppliedOperation]:
    return [AppliedOperation(type=r.type, path=relative_path(r.path, repo_path)) for r in reports]


def run_shell_commands(
    environment: RemoteEnvironment,
    commands: list[str],
    repo_path: str,
    timeout: float = 180,
) -> list[CommandReport]:
    """Run the generated shell commands in the repository, in order.

    A nonzero exit is logged and the next command still runs.
    """
    reports: list[CommandReport] = []
    for command in commands:
        if not command.strip():
            continue
        logger.info("operations.shell: %s", command[:200])
        result = environment.run(command, timeout=timeout, cwd=repo_path)
        if not result.ok:
            logger.warning(
                "operations.shell: exit %d for %r: %s",
                result.exit_code, command[:120], result.stderr.strip()[:300],
            )
        reports.append(CommandReport(command=command, result=result))
    return reports
