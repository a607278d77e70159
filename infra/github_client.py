"""GitHub forge client.

Implements :class:`~infra.forge.ForgeClient` against the GitHub REST API v3.
Authentication uses a personal access token (PAT) supplied via the
``GITHUB_TOKEN`` environment variable / config key.

Usage::

    from infra.factory import get_github_client
    client = get_github_client()
    upstream = parse_github_url("https://github.com/acme/widget")
    fork = client.get_fork(upstream, client.get_authenticated_user().login)
"""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import quote

import httpx

from infra.forge import (
    ForgeError,
    ForgeUser,
    ForkInfo,
    InvalidRepositoryUrl,
    PRRequest,
    PRResult,
    Upstream,
)

_GITHUB_API = "https://api.github.com"

# Accepts https://github.com/o/r, https://github.com/o/r.git, git@github.com:o/r.git
# and deeper web URLs such as https://github.com/o/r/tree/main.
_GITHUB_URL_RE = re.compile(r"github\.com[/:](?P<owner>[^/\s]+)/(?P<repo>[^/\s?#]+)")


def parse_github_url(repo_url: str) -> Upstream:
    """Extract ``owner`` and ``repo`` from a GitHub repository URL.

    Raises:
        InvalidRepositoryUrl: if *repo_url* is not a GitHub repository URL.
    """
    match = _GITHUB_URL_RE.search((repo_url or "").strip())
    if not match:
        raise InvalidRepositoryUrl(f"Invalid GitHub URL: {repo_url!r}")
    repo = match.group("repo").removesuffix(".git")
    if not repo:
        raise InvalidRepositoryUrl(f"Invalid GitHub URL: {repo_url!r}")
    return Upstream(owner=match.group("owner"), repo=repo)


class GitHubClient:
    """GitHub REST API v3 client.

    Args:
        token: GitHub personal access token.
        base_url: API base URL.  Override in tests or for GitHub Enterprise.
        timeout: HTTP timeout in seconds (default 30).
    """

    def __init__(
        self,
        token: str = "",
        base_url: str = _GITHUB_API,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        headers: dict[str, str] = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(headers=headers, timeout=timeout)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = self._client.request(method, url, json=json)
            response.raise_for_status()
            return response.json() if response.content else {}
        except httpx.HTTPStatusError as exc:
            raise ForgeError(
                f"GitHub {method} {path} failed: {exc.response.status_code} {exc.response.text[:200]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise ForgeError(f"GitHub {method} {path} network error: {exc}") from exc

    def _get(self, path: str) -> Any:
        return self._request("GET", path)

    def _post(self, path: str, json: dict[str, Any]) -> Any:
        return self._request("POST", path, json=json)

    def _repo_path(self, owner: str, repo: str) -> str:
        """Return URL-encoded ``/repos/owner/name``."""
        return f"/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"

    # ------------------------------------------------------------------
    # ForgeClient implementation
    # ------------------------------------------------------------------

    def get_authenticated_user(self) -> ForgeUser:
        """Return the login (and public email, if any) of the token owner."""
        data = self._get("/user")
        return ForgeUser(login=data["login"], email=data.get("email"))

    def get_fork(self, upstream: Upstream, login: str) -> ForkInfo:
        """Return the user's fork of *upstream*, if one exists.

        Only ``login/<repo>`` is checked.  A repository with that name which is
        not a fork, or whose parent is another repository, does not count.
        """
        try:
            data = self._get(self._repo_path(login, upstream.repo))
        except ForgeError as exc:
            if exc.status_code == 404:
                return ForkInfo(exists=False)
            raise

        parent = (data.get("parent") or {}).get("full_name", "")
        if data.get("fork") and parent == upstream.full_name:
            return ForkInfo(
                exists=True,
                clone_url=data["clone_url"],
                fork_owner=login,
                name=data.get("name", upstream.repo),
            )
        return ForkInfo(exists=False)

    def create_fork(self, upstream: Upstream) -> ForkInfo:
        """Request a fork of *upstream*.  GitHub answers 202 and forks asynchronously."""
        data = self._post(f"{self._repo_path(upstream.owner, upstream.repo)}/forks", json={})
        return ForkInfo(
            exists=True,
            clone_url=data["clone_url"],
            fork_owner=data["owner"]["login"],
            name=data.get("name", upstream.repo),
        )

    def repository_exists(self, owner: str, repo: str) -> bool:
        try:
            self._get(self._repo_path(owner, repo))
        except ForgeError as exc:
            if exc.status_code == 404:
                return False
            raise
        return True

    def get_default_branch(self, upstream: Upstream) -> str:
        """Return the default branch name (e.g. ``"main"``) for *upstream*."""
        data = self._get(self._repo_path(upstream.owner, upstream.repo))
        return data.get("default_branch", "main")

    def create_pr(self, upstream: Upstream, pr: PRRequest) -> PRResult:
        """Open a pull request on *upstream* from ``pr.head`` (``fork_owner:branch``)."""
        data = self._post(
            f"{self._repo_path(upstream.owner, upstream.repo)}/pulls",
            json={
                "title": pr.title,
                "body": pr.body,
                "head": pr.head,
                "base": pr.base,
            },
        )
        return PRResult(number=data["number"], url=data["html_url"])

    def authenticated_url(self, clone_url: str) -> str:
        """Return *clone_url* with the token embedded as a URL credential.

        The result must never be logged; use :func:`app.core.logging.redact`
        on anything derived from it.
        """
        if not self._token:
            return clone_url
        return clone_url.replace("https://", f"https://{self._token}@", 1)

    @property
    def token(self) -> str:
        return self._token

    def close(self) -> None:
        self._client.close()

    def __repr__(self) -> str:  # pragma: no cover
        return f"GitHubClient(base_url={self._base_url!r})"
