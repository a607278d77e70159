"""Per-request pipeline: fork → workspace → clone → discovery → narrowing →
prompt → generation → application → shell commands → publish.

The work is split in two phases so the HTTP layer can answer with a proper
status code for anything that goes wrong before streaming starts:

:meth:`Pipeline.prepare`
    Everything up to the prompt.  Raises on failure.
:meth:`Pipeline.execute`
    Generation, application and publishing.  Never raises: every outcome is
    written to the :class:`~app.agents.generation.OutputChannel`, ending with
    a ``__PR_CREATED__`` / ``__PR_FAILED__`` marker and a JSON payload (or the
    no-op generation when there was nothing to change).
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from app.agents.generation import GenerationError, GenerationStream, OutputChannel
from app.agents.models import missing_model_credentials
from app.core.config import Settings, get_settings
from app.core.logging import get_logger
from app.core.narrowing import read_candidates, select_files_to_modify
from app.core.operations import (
    OperationError,
    applied_operations,
    apply_generation,
    run_shell_commands,
)
from app.core.orchestrator import prepare_retry, run_discovery, run_publish
from app.core.prompts import build_generation_prompt, get_file_tree
from app.core.state import Generation, PublishState, PublishStep
from infra.forge import ForgeClient, ForkInfo, ForkNotReady, Upstream
from infra.github_client import parse_github_url
from infra.sandbox import SandboxError
from infra.workspace import Workspace, WorkspaceRegistry, clone_repository

logger = get_logger("core.pipeline")

PR_CREATED_MARKER = "__PR_CREATED__"
PR_FAILED_MARKER = "__PR_FAILED__"

NOOP_EXPLANATION = "No files need to be modified for this request."


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class InvalidRequest(Exception):
    """The inbound request is missing required input."""


class ConfigurationError(Exception):
    """Required credentials are not configured."""


class NothingToRetry(Exception):
    """The project has no failed publish to resume."""


# ---------------------------------------------------------------------------
# Inputs & prepared state
# ---------------------------------------------------------------------------


@dataclass
class ChatInput:
    repo_url: str
    user_request: str
    project_id: str


def validate_chat_input(repo_url: str | None, user_request: str | None, project_id: str | None = None) -> ChatInput:
    """Reject missing input before any side effect.  Generates a project id if absent."""
    if not (repo_url or "").strip():
        raise InvalidRequest("Repository URL is required")
    if not (user_request or "").strip():
        raise InvalidRequest("User request is required")
    return ChatInput(
        repo_url=repo_url.strip(),
        user_request=user_request.strip(),
        project_id=(project_id or "").strip() or str(uuid.uuid4()),
    )


def check_infrastructure(settings: Settings | None = None) -> None:
    """Fail fast when credentials needed by this request are missing."""
    settings = settings or get_settings()
    missing: list[str] = []
    if not settings.github_token.strip():
        missing.append("GITHUB_TOKEN")
    missing += missing_model_credentials(settings)
    if settings.sandbox_provider == "e2b" and not settings.e2b_api_key.strip():
        missing.append("E2B_API_KEY")
    elif settings.sandbox_provider not in ("e2b", "local"):
        raise ConfigurationError(f"Unknown SANDBOX_PROVIDER {settings.sandbox_provider!r}")
    if missing:
        raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")


def acquire_fork(
    forge: ForgeClient,
    upstream: Upstream,
    login: str,
    attempts: int = 10,
    interval: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> ForkInfo:
    """Return the user's fork of *upstream*, creating it if needed.

    An existing fork is reused without any create call.  A new fork is
    polled for up to *attempts* times, *interval* seconds apart.

    Raises:
        ForkNotReady: if the new fork never becomes visible.
    """
    fork = forge.get_fork(upstream, login)
    if fork.exists:
        logger.info("pipeline.fork: reusing %s", fork.clone_url)
        return fork

    logger.info("pipeline.fork: forking %s", upstream.full_name)
    created = forge.create_fork(upstream)
    owner = created.fork_owner or login
    name = created.name or upstream.repo
    for attempt in range(1, attempts + 1):
        if forge.repository_exists(owner, name):
            logger.info("pipeline.fork: ready after %d check(s)", attempt)
            return created
        logger.debug("pipeline.fork: attempt %d/%d, waiting", attempt, attempts)
        sleep(interval)
    raise ForkNotReady(f"Fork {owner}/{name} was not ready after {attempts} attempts")


@dataclass
class PreparedRequest:
    """Everything :meth:`Pipeline.execute` needs, produced by :meth:`Pipeline.prepare`."""

    chat: ChatInput
    workspace: Workspace
    upstream: Upstream
    login: str
    user_email: str
    fork: ForkInfo
    repo_path: str
    keywords: list[str] = field(default_factory=list)
    candidates: list[str] = field(default_factory=list)
    selected: list[str] = field(default_factory=list)
    prompt: str = ""

    @property
    def is_noop(self) -> bool:
        return not self.selected


def failure_payload(step: PublishStep, error: str) -> dict[str, Any]:
    return {"success": False, "error": error, "step": step.value}


def format_marker(payload: dict[str, Any]) -> str:
    marker = PR_CREATED_MARKER if payload.get("success") else PR_FAILED_MARKER
    return f"\n\n{marker}\n{json.dumps(payload)}"


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class Pipeline:
    """Runs chat requests against a :class:`WorkspaceRegistry`.

    Args:
        registry:       Workspace registry (owns the environments).
        forge_factory:  Returns a :class:`ForgeClient`; called once, on first use.
        selector_llm:   Model for tool selection and narrowing (default: ``get_llm("selector")``).
        generator_llm:  Model for generation (default: ``get_llm("generator")``).
        clock:          Unix time source for branch names.
        sleep:          Used between fork polls.
    """

    def __init__(
        self,
        registry: WorkspaceRegistry,
        forge_factory: Callable[[], ForgeClient],
        selector_llm: Any = None,
        generator_llm: Any = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self._forge_factory = forge_factory
        self._selector_llm = selector_llm
        self._generator_llm = generator_llm
        self._settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep
        self._forge: ForgeClient | None = None

    @property
    def forge(self) -> ForgeClient:
        if self._forge is None:
            self._forge = self._forge_factory()
        return self._forge

    def _generator(self) -> Any:
        if self._generator_llm is None:
            from app.agents.models import get_llm
            return get_llm("generator")
        return self._generator_llm

    # ── Phase 1 ──────────────────────────────────────────────────────────

    async def prepare(self, chat: ChatInput) -> PreparedRequest:
        """Resolve the fork, set up the workspace and build the prompt.

        Raises:
            ForgeError: identity lookup, fork acquisition (incl. ``InvalidRepositoryUrl``).
            WorkspaceError / SandboxError: environment or clone failures.
        """
        settings = self._settings
        forge = self.forge

        upstream = parse_github_url(chat.repo_url)
        user = await asyncio.to_thread(forge.get_authenticated_user)
        logger.info("pipeline[%s]: %s as %s", chat.project_id, upstream.full_name, user.login)

        fork = await asyncio.to_thread(
            acquire_fork, forge, upstream, user.login,
            settings.fork_poll_attempts, settings.fork_poll_interval_seconds, self._sleep,
        )

        workspace, created = await asyncio.to_thread(self.registry.get_or_create, chat.project_id)
        logger.info("pipeline[%s]: %s workspace", chat.project_id, "new" if created else "existing")

        repo_path = await asyncio.to_thread(
            clone_repository,
            workspace,
            fork.clone_url or "",
            settings.repo_dir,
            settings.clone_timeout_seconds,
            settings.git_install_timeout_seconds,
        )
        # A fresh clone discards the edits a stored failed publish refers to.
        workspace.failed_publish = None
        environment = workspace.environment

        discovery = await run_discovery(environment, chat.user_request, repo_path, self._selector_llm)
        prepared = PreparedRequest(
            chat=chat,
            workspace=workspace,
            upstream=upstream,
            login=user.login,
            user_email=user.email or "",
            fork=fork,
            repo_path=repo_path,
            keywords=discovery.keywords,
            candidates=discovery.found_files,
        )

        prepared.selected = await asyncio.to_thread(
            select_files_to_modify,
            environment,
            chat.user_request,
            discovery.found_files,
            repo_path,
            self._selector_llm,
            settings.max_candidate_files,
        )
        if prepared.is_noop:
            logger.info("pipeline[%s]: nothing to modify", chat.project_id)
            return prepared

        selected_contents = await asyncio.to_thread(read_candidates, environment, prepared.selected)
        file_tree = await asyncio.to_thread(get_file_tree, environment, repo_path, settings.file_tree_limit)
        prepared.prompt = build_generation_prompt(
            repo_url=chat.repo_url,
            request_text=chat.user_request,
            keywords=prepared.keywords,
            selected_files=selected_contents,
            candidates=prepared.candidates,
            file_tree=file_tree,
            repo_path=repo_path,
        )
        return prepared

    # ── Phase 2 ──────────────────────────────────────────────────────────

    async def execute(self, prepared: PreparedRequest, channel: OutputChannel) -> dict[str, Any] | None:
        """Generate, apply and publish, writing everything to *channel*.

        Closes the channel and releases the project when done.  Returns the
        marker payload (``None`` for a no-op request).
        """
        project_id = prepared.chat.project_id
        try:
            if prepared.is_noop:
                channel.write(json.dumps(Generation.noop(NOOP_EXPLANATION).to_payload()))
                return None
            payload = await self._generate_apply_publish(prepared, channel)
            channel.write(format_marker(payload))
            return payload
        except Exception as exc:
            logger.exception("pipeline[%s]: unexpected error", project_id)
            payload = failure_payload(PublishStep.APPLY, str(exc))
            channel.write(format_marker(payload))
            return payload
        finally:
            channel.close()
            self.registry.release(project_id)

    async def _generate_apply_publish(self, prepared: PreparedRequest, channel: OutputChannel) -> dict[str, Any]:
        settings = self._settings
        project_id = prepared.chat.project_id
        environment = prepared.workspace.environment

        stream = GenerationStream(
            self._generator(), prepared.prompt, channel, timeout=settings.generation_timeout_seconds
        )
        stream.start()
        try:
            generation = await stream.result()
        except GenerationError as exc:
            logger.error("pipeline[%s]: generation failed: %s", project_id, exc)
            return failure_payload(PublishStep.GENERATION, str(exc))

        try:
            reports = await asyncio.to_thread(apply_generation, environment, generation, prepared.repo_path)
        except (OperationError, SandboxError) as exc:
            logger.error("pipeline[%s]: applying operations failed: %s", project_id, exc)
            return failure_payload(PublishStep.APPLY, str(exc))

        if generation.shell_commands:
            await asyncio.to_thread(
                run_shell_commands,
                environment,
                generation.shell_commands,
                prepared.repo_path,
                settings.command_timeout_seconds,
            )

        state = PublishState(
            project_id=project_id,
            request_text=prepared.chat.user_request,
            explanation=generation.explanation,
            operations=applied_operations(reports, prepared.repo_path),
            shell_commands=generation.shell_commands,
            repo_path=prepared.repo_path,
            upstream_owner=prepared.upstream.owner,
            upstream_repo=prepared.upstream.repo,
            login=prepared.login,
            user_email=prepared.user_email,
            fork_owner=prepared.fork.fork_owner or prepared.login,
            fork_clone_url=prepared.fork.clone_url or "",
        )
        result = await run_publish(state, environment, self.forge, self._clock)
        prepared.workspace.failed_publish = None if result.succeeded else result
        return result.result_payload()

    # ── Retry ────────────────────────────────────────────────────────────

    async def retry_publish(self, project_id: str) -> dict[str, Any]:
        """Resume the last failed publish of *project_id* at its failed step.

        The caller must hold the project (see :meth:`WorkspaceRegistry.try_acquire`).

        Raises:
            NothingToRetry: no workspace, or no failed publish on it.
        """
        workspace = self.registry.get(project_id)
        if workspace is None or workspace.failed_publish is None:
            raise NothingToRetry(f"No failed publish for project {project_id!r}")

        state = prepare_retry(workspace.failed_publish)
        logger.info("pipeline[%s]: retrying publish from %s", project_id, state.resume_from)
        result = await run_publish(state, workspace.environment, self.forge, self._clock)
        workspace.failed_publish = None if result.succeeded else result
        return result.result_payload()


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------

_pipeline: Pipeline | None = None


def get_pipeline() -> Pipeline:
    """Return the process-wide :class:`Pipeline`, creating it on first call."""
    global _pipeline
    if _pipeline is None:
        from infra.factory import get_github_client
        from infra.workspace import get_workspace_registry

        _pipeline = Pipeline(registry=get_workspace_registry(), forge_factory=get_github_client)
    return _pipeline


def set_pipeline(pipeline: Pipeline | None) -> None:
    """Replace the process-wide pipeline (tests, embedding)."""
    global _pipeline
    _pipeline = pipeline
