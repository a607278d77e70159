"""Publish nodes: branch → commit → push → pull_request.

Collaborators come from ``config["configurable"]``:

- ``environment`` — the workspace's :class:`~infra.sandbox.RemoteEnvironment`
- ``forge``       — a :class:`~infra.forge.ForgeClient`
- ``clock``       — optional, returns unix seconds (branch names)

Every node is wrapped by :func:`_publish_step`: a failure is recorded as
``failed_step`` + ``error`` on the state instead of propagating, so the graph
ends cleanly and the already-applied edits stay in the working copy.
"""

from __future__ import annotations

import functools
import re
import shlex
import time
from typing import Callable

from langchain_core.runnables import RunnableConfig

from app.core.config import get_settings
from app.core.logging import get_logger, redact
from app.core.state import PublishState, PublishStep
from infra.forge import ForgeClient, ForgeError, PRRequest, Upstream
from infra.sandbox import RemoteEnvironment, SandboxError

from ._helpers import _configurable

logger = get_logger("core.nodes.publish")

BRANCH_PREFIX = "ai-bot"
# Keeps a short request whole: "add a subtract function to math.ts" slugs to 34 chars.
SLUG_MAX_LENGTH = 40

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


class PublishError(Exception):
    """A publish step failed (nonzero git exit, missing data, …)."""


# ---------------------------------------------------------------------------
# Naming & formatting
# ---------------------------------------------------------------------------


def slugify(text: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    slug = _NON_ALNUM_RE.sub("-", (text or "").lower()).strip("-")
    return slug[:max_length].strip("-") or "change"


def branch_name(request_text: str, timestamp: int) -> str:
    """``ai-bot/<unix-timestamp>-<slug>``."""
    return f"{BRANCH_PREFIX}/{timestamp}-{slugify(request_text)}"


def commit_message(state: PublishState) -> str:
    message = f"feat: {state.request_text.strip()}"
    if state.explanation.strip():
        message += f"\n\n{state.explanation.strip()}"
    return message


def pr_title(state: PublishState) -> str:
    return f"🤖 {state.request_text.strip()}"


def pr_body(state: PublishState) -> str:
    lines = ["## Summary", "", state.explanation.strip() or "_No explanation provided._", ""]

    lines += ["## File operations", ""]
    if state.operations:
        lines += [f"- `{op.type}` `{op.path}`" for op in state.operations]
    else:
        lines.append("_None_")
    lines.append("")

    lines += ["## Shell commands", ""]
    if state.shell_commands:
        lines += [f"- `{command}`" for command in state.shell_commands]
    else:
        lines.append("_None_")
    lines.append("")

    lines.append(f"Commit: `{state.commit[:7]}`")
    lines.append("")
    lines.append(f"> Requested change: {state.request_text.strip()}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _environment(config: RunnableConfig) -> RemoteEnvironment:
    environment = _configurable(config, "environment")
    if environment is None:
        raise PublishError("No execution environment in run config")
    return environment


def _forge(config: RunnableConfig) -> ForgeClient:
    forge = _configurable(config, "forge")
    if forge is None:
        raise PublishError("No forge client in run config")
    return forge


def _git(
    environment: RemoteEnvironment,
    args: str,
    repo_path: str,
    timeout: float = 60,
    secrets: tuple[str, ...] = (),
) -> str:
    """Run ``git <args>`` in the repository; raise with stderr on nonzero exit."""
    result = environment.run(f"git {args}", timeout=timeout, cwd=repo_path)
    if not result.ok:
        stderr = redact((result.stderr or result.stdout).strip(), *secrets)
        label = redact(args, *secrets).split(" ", 1)[0]
        raise PublishError(f"git {label} failed (exit {result.exit_code}): {stderr[:500]}")
    return result.stdout


def _publish_step(step: PublishStep) -> Callable:
    """Record success in ``completed`` or failure in ``failed_step`` / ``error``."""

    def decorator(fn: Callable[[PublishState, RunnableConfig], dict]) -> Callable:
        @functools.wraps(fn)
        def wrapper(state: PublishState, config: RunnableConfig) -> dict:
            logger.info("publish.%s: start", step.value)
            try:
                update = fn(state, config)
            except (PublishError, ForgeError, SandboxError) as exc:
                logger.error("publish.%s: failed: %s", step.value, exc)
                return {"failed_step": step, "error": str(exc)}
            return {**update, "completed": [*state.completed, step]}

        return wrapper

    return decorator


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


@_publish_step(PublishStep.BRANCH)
def branch_node(state: PublishState, config: RunnableConfig) -> dict:
    if state.branch:
        return {}
    clock = _configurable(config, "clock") or time.time
    branch = branch_name(state.request_text, int(clock()))
    logger.info("publish.branch: %s", branch)
    return {"branch": branch}


@_publish_step(PublishStep.COMMIT)
def commit_node(state: PublishState, config: RunnableConfig) -> dict:
    environment = _environment(config)
    settings = get_settings()
    repo = state.repo_path

    author_name = settings.git_author_name or state.login
    author_email = (
        settings.git_author_email
        or state.user_email
        or f"{state.login}@users.noreply.github.com"
    )

    _git(environment, f"config user.name {shlex.quote(author_name)}", repo)
    _git(environment, f"config user.email {shlex.quote(author_email)}", repo)
    # -B so a retry after a failed commit can re-enter the branch
    _git(environment, f"checkout -B {shlex.quote(state.branch)}", repo)
    _git(environment, "add -A", repo)
    _git(environment, f"commit -m {shlex.quote(commit_message(state))}", repo)
    commit = _git(environment, "rev-parse HEAD", repo).strip()
    if not commit:
        raise PublishError("git rev-parse returned no commit hash")

    logger.info("publish.commit: %s on %s", commit[:7], state.branch)
    return {"commit": commit}


@_publish_step(PublishStep.PUSH)
def push_node(state: PublishState, config: RunnableConfig) -> dict:
    environment = _environment(config)
    forge = _forge(config)
    settings = get_settings()

    push_url = forge.authenticated_url(state.fork_clone_url)
    secrets = (getattr(forge, "token", ""),)
    _git(
        environment,
        f"push {shlex.quote(push_url)} {shlex.quote(state.branch)}",
        state.repo_path,
        timeout=settings.push_timeout_seconds,
        secrets=secrets,
    )
    logger.info("publish.push: %s → %s", state.branch, state.fork_url)
    return {}


@_publish_step(PublishStep.PULL_REQUEST)
def pull_request_node(state: PublishState, config: RunnableConfig) -> dict:
    forge = _forge(config)
    upstream = Upstream(owner=state.upstream_owner, repo=state.upstream_repo)

    base = state.base_branch or forge.get_default_branch(upstream)
    pr = forge.create_pr(
        upstream,
        PRRequest(
            title=pr_title(state),
            body=pr_body(state.model_copy(update={"base_branch": base})),
            head=f"{state.fork_owner}:{state.branch}",
            base=base,
        ),
    )
    logger.info("publish.pull_request: #%d %s", pr.number, pr.url)
    return {"base_branch": base, "pr_number": pr.number, "pr_url": pr.url}
