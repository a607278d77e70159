"""Forge data models, client protocol and exceptions.

All code that needs to talk to the hosting service goes through a
``ForgeClient`` implementation.  Direct HTTP calls to the GitHub API outside
this package are not allowed.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import BaseModel


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


class Upstream(BaseModel):
    """The repository a change request targets (``owner/repo``)."""

    owner: str
    repo: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


class ForgeUser(BaseModel):
    """The identity behind the configured token."""

    login: str
    email: str | None = None


class ForkInfo(BaseModel):
    """Relationship between the authenticated user and an upstream repo.

    Recomputed on every request: forks can be deleted or renamed externally.
    """

    exists: bool
    clone_url: str | None = None
    fork_owner: str | None = None
    name: str | None = None
    """Repository name of the fork (GitHub may suffix it on collisions)."""


class PRRequest(BaseModel):
    """Payload for creating a pull request from a fork."""

    title: str
    body: str = ""
    head: str
    """``fork_owner:branch``."""
    base: str


class PRResult(BaseModel):
    """Result returned after a PR is created."""

    number: int
    url: str


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ForgeClient(Protocol):
    """Forge operations required by the publish workflow.

    All methods are synchronous.  Async callers should run them in a thread
    pool (e.g. ``asyncio.to_thread``).
    """

    def get_authenticated_user(self) -> ForgeUser:
        """Return the user the token belongs to."""
        ...

    def get_fork(self, upstream: Upstream, login: str) -> ForkInfo:
        """Return whether *login* owns a fork of *upstream*.

        A repository only counts if it is marked as a fork and its parent is
        exactly ``upstream.full_name``.
        """
        ...

    def create_fork(self, upstream: Upstream) -> ForkInfo:
        """Ask the forge to fork *upstream*.  Returns before the fork is ready."""
        ...

    def repository_exists(self, owner: str, repo: str) -> bool:
        """Return True if ``owner/repo`` is visible to the token."""
        ...

    def get_default_branch(self, upstream: Upstream) -> str:
        """Return the default branch name (e.g. ``"main"``)."""
        ...

    def create_pr(self, upstream: Upstream, pr: PRRequest) -> PRResult:
        """Open a pull request against *upstream*."""
        ...

    def authenticated_url(self, clone_url: str) -> str:
        """Return *clone_url* with the token embedded as a URL credential."""
        ...


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ForgeError(Exception):
    """Raised for any forge API error (HTTP errors, missing fields, …)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __repr__(self) -> str:  # pragma: no cover
        return f"{type(self).__name__}({self.args[0]!r}, status_code={self.status_code})"


class InvalidRepositoryUrl(ForgeError):
    """The repository URL does not point at a GitHub repository."""


class ForkNotReady(ForgeError):
    """A freshly created fork did not become visible within the poll budget."""
