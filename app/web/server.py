"""FastAPI web server — streams change requests into pull requests.

``POST /api/chat`` answers with a ``text/plain`` stream: the generator's text
as it arrives, then a ``__PR_CREATED__`` / ``__PR_FAILED__`` marker followed
by a JSON payload.  Anything that fails before streaming starts gets a JSON
error with a proper status code instead.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from app.agents.generation import OutputChannel
from app.agents.models import missing_model_credentials
from app.core.config import get_settings
from app.core.logging import get_logger
from app.core.pipeline import (
    ConfigurationError,
    InvalidRequest,
    NothingToRetry,
    check_infrastructure,
    get_pipeline,
    validate_chat_input,
)
from infra.forge import ForgeError, InvalidRepositoryUrl
from infra.sandbox import SandboxError
from infra.workspace import WorkspaceError

logger = get_logger("web.server")

# Background pipeline runs; kept referenced until they finish.
_running: set[asyncio.Task] = set()


# ── Models ────────────────────────────────────────────────────────────────

class ChatRequest(BaseModel):
    """Inbound change request.  Required fields are checked by the pipeline
    so a missing one is a 400 rather than a validation 422."""

    model_config = ConfigDict(populate_by_name=True)

    repo_url: str | None = Field(default=None, alias="repoUrl")
    user_request: str | None = Field(default=None, alias="userRequest")
    project_id: str | None = Field(default=None, alias="projectId")


def _error(message: str, status_code: int, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


# ── Lifespan ──────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Web server started")
    yield
    for task in tuple(_running):
        task.cancel()
    for task in tuple(_running):
        with suppress(asyncio.CancelledError):
            await task
    pipeline = get_pipeline()
    for project_id in pipeline.registry.active_ids():
        pipeline.registry.evict(project_id)
    logger.info("Lifespan cleanup complete")


app = FastAPI(title="forkpilot", version="0.1.0", lifespan=lifespan)


# ── API Endpoints ─────────────────────────────────────────────────────────

@app.post("/api/chat")
async def chat(req: ChatRequest):
    try:
        chat_input = validate_chat_input(req.repo_url, req.user_request, req.project_id)
    except InvalidRequest as exc:
        return _error(str(exc), 400)

    try:
        check_infrastructure()
    except ConfigurationError as exc:
        logger.error("chat: %s", exc)
        return _error(str(exc), 500)

    pipeline = get_pipeline()
    project_id = chat_input.project_id
    if not pipeline.registry.try_acquire(project_id):
        return _error(f"Project {project_id} is busy with another request", 409, projectId=project_id)

    logger.info("chat[%s]: %s | %s", project_id, chat_input.repo_url, chat_input.user_request[:100])
    try:
        prepared = await pipeline.prepare(chat_input)
    except InvalidRepositoryUrl as exc:
        pipeline.registry.release(project_id)
        return _error(str(exc), 400, projectId=project_id)
    except (ForgeError, WorkspaceError, SandboxError) as exc:
        pipeline.registry.release(project_id)
        logger.error("chat[%s]: preparation failed: %s", project_id, exc)
        return _error(str(exc), 500, projectId=project_id)
    except Exception as exc:
        pipeline.registry.release(project_id)
        logger.exception("chat[%s]: unexpected preparation error", project_id)
        return _error(str(exc), 500, projectId=project_id)

    # The pipeline keeps running if the client goes away; only the writes stop.
    channel = OutputChannel()
    task = asyncio.create_task(pipeline.execute(prepared, channel))
    _running.add(task)
    task.add_done_callback(_running.discard)

    return StreamingResponse(
        channel,
        media_type="text/plain; charset=utf-8",
        headers={"X-Project-Id": project_id, "Cache-Control": "no-cache"},
    )


@app.post("/api/projects/{project_id}/publish")
async def retry_publish(project_id: str):
    pipeline = get_pipeline()
    if not pipeline.registry.try_acquire(project_id):
        return _error(f"Project {project_id} is busy with another request", 409, projectId=project_id)
    try:
        payload = await pipeline.retry_publish(project_id)
    except NothingToRetry as exc:
        return _error(str(exc), 404, projectId=project_id)
    finally:
        pipeline.registry.release(project_id)
    return JSONResponse(payload, status_code=200 if payload.get("success") else 502)


@app.delete("/api/projects/{project_id}")
async def delete_project(project_id: str):
    pipeline = get_pipeline()
    if pipeline.registry.is_busy(project_id):
        return _error(f"Project {project_id} is busy with another request", 409, projectId=project_id)
    removed = await asyncio.to_thread(pipeline.registry.evict, project_id)
    if not removed:
        return _error(f"Unknown project {project_id}", 404, projectId=project_id)
    return {"status": "deleted", "projectId": project_id}


@app.get("/api/projects")
async def list_projects():
    return {"projects": get_pipeline().registry.active_ids()}


@app.get("/health")
async def health():
    settings = get_settings()
    missing = missing_model_credentials(settings)
    if not settings.github_token.strip():
        missing.append("GITHUB_TOKEN")
    if settings.sandbox_provider == "e2b" and not settings.e2b_api_key.strip():
        missing.append("E2B_API_KEY")
    return {
        "status": "ok" if not missing else "degraded",
        "sandboxProvider": settings.sandbox_provider,
        "selectorModel": settings.selector_model,
        "generatorModel": settings.generator_model,
        "missing": missing,
    }
