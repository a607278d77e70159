"""Shared state and data models for the discovery and publish graphs."""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Generation — the structured model output
# ---------------------------------------------------------------------------


class SearchReplace(BaseModel):
    """One unit of an ``updateFile`` operation."""

    search: str
    replace: str = ""


class _FileOperationBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    path: str


class CreateFile(_FileOperationBase):
    type: Literal["createFile"] = "createFile"
    content: str = ""


class RewriteFile(_FileOperationBase):
    type: Literal["rewriteFile"] = "rewriteFile"
    content: str = ""


class UpdateFile(_FileOperationBase):
    type: Literal["updateFile"] = "updateFile"
    search_replace: list[SearchReplace] = Field(default_factory=list, alias="searchReplace")


class DeleteFile(_FileOperationBase):
    type: Literal["deleteFile"] = "deleteFile"


FileOperation = Annotated[
    CreateFile | RewriteFile | UpdateFile | DeleteFile,
    Field(discriminator="type"),
]


class Generation(BaseModel):
    """File operations + shell commands + explanation, produced once per request."""

    model_config = ConfigDict(populate_by_name=True)

    file_operations: list[FileOperation] = Field(default_factory=list, alias="fileOperations")
    shell_commands: list[str] = Field(default_factory=list, alias="shellCommands")
    explanation: str = ""

    @classmethod
    def noop(cls, explanation: str) -> Generation:
        return cls(explanation=explanation)

    @property
    def is_noop(self) -> bool:
        return not self.file_operations and not self.shell_commands

    def to_payload(self) -> dict[str, Any]:
        """Wire form (camelCase keys)."""
        return self.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Discovery graph
# ---------------------------------------------------------------------------


class SearchTool(StrEnum):
    GREP = "grep"
    GLOB = "glob"
    REGEX = "regex"


class DiscoveryState(BaseModel):
    """State passed between the discovery nodes."""

    request_text: str = ""
    repo_path: str = ""

    keywords: list[str] = Field(default_factory=list)
    selected_tool: SearchTool | None = None
    search_query: str = ""
    used_fallback: bool = False

    found_files: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Publish graph
# ---------------------------------------------------------------------------


class PublishStep(StrEnum):
    # Graph nodes
    BRANCH = "branch"
    COMMIT = "commit"
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    # Pipeline stages reported through the same failure payload
    GENERATION = "generation"
    APPLY = "apply"


class AppliedOperation(BaseModel):
    """An operation as listed in the PR body: kind + repo-relative path."""

    type: str
    path: str


class PublishState(BaseModel):
    """State passed between the publish nodes.

    Kept on the workspace after a failure so the publish can be resumed at
    :attr:`failed_step` without repeating discovery or generation.
    """

    # ── Request ───────────────────────────────────────────────────────
    project_id: str = ""
    request_text: str = ""
    explanation: str = ""
    operations: list[AppliedOperation] = Field(default_factory=list)
    shell_commands: list[str] = Field(default_factory=list)

    # ── Repositories ──────────────────────────────────────────────────
    repo_path: str = ""
    upstream_owner: str = ""
    upstream_repo: str = ""
    login: str = ""
    user_email: str = ""
    fork_owner: str = ""
    fork_clone_url: str = ""
    base_branch: str = ""

    # ── Progress ──────────────────────────────────────────────────────
    branch: str = ""
    commit: str = ""
    pr_number: int | None = None
    pr_url: str = ""
    completed: list[PublishStep] = Field(default_factory=list)

    resume_from: PublishStep | None = None
    failed_step: PublishStep | None = None
    error: str = ""

    @property
    def succeeded(self) -> bool:
        return self.failed_step is None and self.pr_number is not None

    @property
    def fork_url(self) -> str:
        return self.fork_clone_url.removesuffix(".git")

    def result_payload(self) -> dict[str, Any]:
        """Structured result appended after the ``__PR_CREATED__`` / ``__PR_FAILED__`` marker."""
        if not self.succeeded:
            return {
                "success": False,
                "error": self.error or "publish did not complete",
                "step": (self.failed_step or PublishStep.PULL_REQUEST).value,
            }
        return {
            "success": True,
            "prNumber": self.pr_number,
            "prUrl": self.pr_url,
            "branch": self.branch,
            "commit": self.commit,
            "from": f"{self.fork_owner}:{self.branch}",
            "to": f"{self.upstream_owner}:{self.base_branch}",
            "forkUrl": self.fork_url,
        }
