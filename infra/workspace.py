"""Workspace registry — one execution environment per project id.

A *workspace* pairs a project id with a :class:`~infra.sandbox.RemoteEnvironment`
and the path of the fork cloned inside it.  Workspaces survive across chat
requests for the same project id and are destroyed after a period of
inactivity (or on explicit cleanup).

The registry is an explicit object rather than module-level state: the clock
and the scheduler used for expiry are injected, so eviction can be driven
deterministically in tests::

    registry = WorkspaceRegistry(create_environment, ttl_seconds=1800)
    ws = registry.create("p1")
    ...
    registry.evict("p1")

Only :meth:`WorkspaceRegistry.create`, :meth:`WorkspaceRegistry.get` (which
refreshes the activity timestamp) and :meth:`WorkspaceRegistry.evict` mutate
the mapping.
"""

from __future__ import annotations

import shlex
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from app.core.logging import get_logger, redact
from infra.sandbox import RemoteEnvironment, SandboxError

logger = get_logger("infra.workspace")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class WorkspaceError(Exception):
    """Raised when a workspace operation cannot be completed."""


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass
class Workspace:
    """A project's execution environment and the clone inside it."""

    project_id: str
    environment: RemoteEnvironment
    created_at: float
    last_used: float

    repo_path: str = ""
    """Absolute path of the cloned fork inside the environment ("" until cloned)."""

    failed_publish: Any = None
    """Publish state of the last failed publish, kept for a retry."""

    expiry: Any = field(default=None, repr=False)


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Runs a callback once after a delay."""

    def schedule(self, delay: float, callback: Callable[[], None]) -> Cancellable: ...


class TimerScheduler:
    """Production scheduler backed by daemon :class:`threading.Timer` threads."""

    def schedule(self, delay: float, callback: Callable[[], None]) -> Cancellable:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class WorkspaceRegistry:
    """Process-wide mapping of project id → :class:`Workspace` with expiry.

    Args:
        environment_factory: Builds a fresh environment for a new workspace.
        ttl_seconds:         Inactivity window before a workspace is evicted.
        scheduler:           Timer source (defaults to :class:`TimerScheduler`).
        clock:               Monotonic time source in seconds.
    """

    def __init__(
        self,
        environment_factory: Callable[[], RemoteEnvironment],
        ttl_seconds: float = 30 * 60,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = environment_factory
        self._ttl = ttl_seconds
        self._scheduler = scheduler or TimerScheduler()
        self._clock = clock
        self._lock = threading.Lock()
        self._workspaces: dict[str, Workspace] = {}
        self._busy: set[str] = set()

    # ── Mutation points ──────────────────────────────────────────────────

    def create(self, project_id: str) -> Workspace:
        """Create the workspace for *project_id* and schedule its expiry.

        Raises:
            WorkspaceError: if the project already has a workspace.
        """
        with self._lock:
            if project_id in self._workspaces:
                raise WorkspaceError(f"Workspace for project {project_id!r} already exists")

        logger.info("workspace.create: %s", project_id)
        environment = self._factory()
        now = self._clock()
        workspace = Workspace(
            project_id=project_id,
            environment=environment,
            created_at=now,
            last_used=now,
        )
        with self._lock:
            self._workspaces[project_id] = workspace
            self._schedule_expiry(workspace, self._ttl)
        logger.info("workspace.create: %s → %s", project_id, environment.environment_id)
        return workspace

    def get(self, project_id: str) -> Workspace | None:
        """Return the workspace for *project_id* and mark it as used."""
        with self._lock:
            workspace = self._workspaces.get(project_id)
            if workspace is not None:
                workspace.last_used = self._clock()
        if workspace is not None:
            self._keep_alive(workspace)
        return workspace

    def evict(self, project_id: str) -> bool:
        """Remove the workspace and kill its environment.

        Kill failures are logged, not retried.  Returns False if there was no
        workspace for *project_id*.
        """
        with self._lock:
            workspace = self._workspaces.pop(project_id, None)
        if workspace is None:
            return False

        if workspace.expiry is not None:
            workspace.expiry.cancel()
        try:
            workspace.environment.kill()
            logger.info("workspace.evict: %s cleaned up", project_id)
        except Exception as exc:
            logger.error("workspace.evict: cleanup error for %s: %s", project_id, exc)
        return True

    # ── Convenience ──────────────────────────────────────────────────────

    def get_or_create(self, project_id: str) -> tuple[Workspace, bool]:
        """Return ``(workspace, created)`` for *project_id*."""
        workspace = self.get(project_id)
        if workspace is not None:
            return workspace, False
        return self.create(project_id), True

    def try_acquire(self, project_id: str) -> bool:
        """Mark the project busy.  Returns False if a request already holds it.

        Works whether or not the project has a workspace yet, so a first
        request can hold the project while its workspace is being created.
        """
        with self._lock:
            if project_id in self._busy:
                return False
            self._busy.add(project_id)
            return True

    def release(self, project_id: str) -> None:
        with self._lock:
            self._busy.discard(project_id)
            workspace = self._workspaces.get(project_id)
            if workspace is not None:
                workspace.last_used = self._clock()
        if workspace is not None:
            self._keep_alive(workspace)

    def is_busy(self, project_id: str) -> bool:
        with self._lock:
            return project_id in self._busy

    def active_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._workspaces)

    def __contains__(self, project_id: object) -> bool:
        with self._lock:
            return project_id in self._workspaces

    def __len__(self) -> int:
        with self._lock:
            return len(self._workspaces)

    # ── Expiry ───────────────────────────────────────────────────────────

    def _keep_alive(self, workspace: Workspace) -> None:
        # The provider's own lifetime must outlast the inactivity window.
        try:
            workspace.environment.keep_alive(self._ttl)
        except SandboxError as exc:
            logger.warning("workspace.keep_alive: %s: %s", workspace.project_id, exc)

    def _schedule_expiry(self, workspace: Workspace, delay: float) -> None:
        project_id = workspace.project_id
        workspace.expiry = self._scheduler.schedule(
            delay, lambda: self._on_expiry(project_id, workspace)
        )

    def _on_expiry(self, project_id: str, workspace: Workspace) -> None:
        with self._lock:
            if self._workspaces.get(project_id) is not workspace:
                return  # evicted (and maybe recreated) in the meantime
            idle = self._clock() - workspace.last_used
            busy = project_id in self._busy
            active = busy or idle < self._ttl
            if active:
                remaining = self._ttl if busy else self._ttl - idle
                self._schedule_expiry(workspace, remaining)
        if active:
            logger.debug("workspace.expiry: %s still active, next check in %.0fs", project_id, remaining)
            if busy:
                self._keep_alive(workspace)
            return
        logger.info("workspace.expiry: %s idle for %.0fs", project_id, idle)
        self.evict(project_id)

    def __repr__(self) -> str:  # pragma: no cover
        return f"WorkspaceRegistry(active={len(self)}, ttl={self._ttl})"


# ---------------------------------------------------------------------------
# Clone
# ---------------------------------------------------------------------------


def clone_repository(
    workspace: Workspace,
    clone_url: str,
    target_dir: str,
    timeout: float = 300,
    git_install_timeout: float = 600,
    secrets: tuple[str, ...] = (),
) -> str:
    """Clone *clone_url* into *target_dir*, replacing any previous clone.

    Git is installed on first use of the environment.  The clone path is
    recorded on the workspace and returned.

    Raises:
        WorkspaceError: if git is unavailable or the clone fails.
    """
    environment = workspace.environment
    try:
        environment.ensure_git(timeout=git_install_timeout)
    except SandboxError as exc:
        raise WorkspaceError(str(exc)) from exc

    logger.info("workspace.clone: %s → %s", redact(clone_url, *secrets), target_dir)
    environment.run(f"rm -rf {shlex.quote(target_dir)}", timeout=60)
    result = environment.run(
        f"git clone {shlex.quote(clone_url)} {shlex.quote(target_dir)}",
        timeout=timeout,
    )
    if not result.ok:
        stderr = redact(result.stderr.strip(), *secrets)
        raise WorkspaceError(f"git clone failed (exit {result.exit_code}): {stderr[:400]}")

    workspace.repo_path = target_dir
    logger.info("workspace.clone: done")
    return target_dir


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------

_registry: WorkspaceRegistry | None = None


def get_workspace_registry() -> WorkspaceRegistry:
    """Return the process-wide :class:`WorkspaceRegistry`, creating it on first call."""
    global _registry
    if _registry is None:
        from app.core.config import get_settings
        from infra.sandbox import create_environment

        settings = get_settings()
        _registry = WorkspaceRegistry(
            environment_factory=lambda: create_environment(settings),
            ttl_seconds=settings.workspace_ttl_seconds,
        )
    return _registry


def set_workspace_registry(registry: WorkspaceRegistry | None) -> None:
    """Replace the process-wide registry (tests, embedding)."""
    global _registry
    _registry = registry
