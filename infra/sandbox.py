"""Remote execution environments — a filesystem + shell per project.

Every workspace owns exactly one :class:`RemoteEnvironment`.  The pipeline
only ever talks to the environment through the small surface defined here:

- :meth:`RemoteEnvironment.run`        — shell command with timeout
- :meth:`RemoteEnvironment.read_file`  — full text content
- :meth:`RemoteEnvironment.write_file` — creates parent directories
- :meth:`RemoteEnvironment.kill`       — tear the environment down

Two providers are available:

``e2b``
    An E2B cloud sandbox.  Requires ``E2B_API_KEY``.
``local``
    A private directory on the host, commands run via ``subprocess``.
    Intended for development and tests; there is no isolation.

Use :func:`create_environment` to build the configured provider.
"""

from __future__ import annotations

import shutil
import subprocess
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from app.core.logging import get_logger

logger = get_logger("infra.sandbox")

# Git is built from source into this prefix when the image lacks it (no sudo).
GIT_LOCAL_PREFIX = "/home/user/local"
GIT_VERSION = "2.44.0"


# ---------------------------------------------------------------------------
# Exceptions & results
# ---------------------------------------------------------------------------


class SandboxError(Exception):
    """Raised when the execution environment cannot complete an operation."""


@dataclass
class CommandResult:
    """Outcome of a shell command inside the environment."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


class RemoteEnvironment(ABC):
    """Filesystem + shell for one project.

    Subclasses implement the raw primitives; git detection and installation
    is shared and runs at most once per instance.
    """

    name: str = "abstract"

    def __init__(self) -> None:
        self._git_ready = False
        self._path_prefix = ""

    @property
    @abstractmethod
    def environment_id(self) -> str:
        """Provider-specific identifier of this environment."""

    @abstractmethod
    def _exec(self, command: str, timeout: float, cwd: str | None) -> CommandResult:
        """Run *command* through a shell and return its result."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Return the full text content of *path*.

        Raises:
            SandboxError: if the file does not exist or cannot be read.
        """

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """Create or overwrite *path*, creating parent directories as needed."""

    @abstractmethod
    def kill(self) -> None:
        """Destroy the environment.  Further calls are undefined."""

    # ------------------------------------------------------------------
    # Shared behaviour
    # ------------------------------------------------------------------

    def run(self, command: str, timeout: float = 60, cwd: str | None = None) -> CommandResult:
        """Run *command*, with a locally installed git on ``PATH`` if one was built."""
        return self._exec(self._path_prefix + command, timeout, cwd)

    def ensure_git(self, timeout: float = 600) -> None:
        """Make sure ``git`` is callable, building it once if the image lacks it.

        The result is cached on the instance so repeat requests against the
        same workspace never re-check or re-install.

        Raises:
            SandboxError: if the installation fails.
        """
        if self._git_ready:
            return

        check = self.run("git --version", timeout=15)
        if check.ok:
            logger.info("sandbox.git: available in %s (%s)", self.environment_id, check.stdout.strip())
            self._git_ready = True
            return

        logger.info("sandbox.git: not found in %s, building %s", self.environment_id, GIT_VERSION)
        install = (
            f"cd /home/user && "
            f"wget -q https://mirrors.edge.kernel.org/pub/software/scm/git/git-{GIT_VERSION}.tar.gz && "
            f"tar -xzf git-{GIT_VERSION}.tar.gz && "
            f"cd git-{GIT_VERSION} && "
            f"make prefix={GIT_LOCAL_PREFIX} all && "
            f"make prefix={GIT_LOCAL_PREFIX} install && "
            f"{GIT_LOCAL_PREFIX}/bin/git --version"
        )
        result = self._exec(install, timeout, None)
        if not result.ok:
            raise SandboxError(f"git installation failed: {result.stderr.strip()[-400:]}")

        self._path_prefix = f"export PATH={GIT_LOCAL_PREFIX}/bin:$PATH && "
        self._git_ready = True
        logger.info("sandbox.git: installed into %s", GIT_LOCAL_PREFIX)

    def keep_alive(self, seconds: float) -> None:
        """Extend the environment's lifetime to *seconds* from now.

        Providers without a server-side lifetime ignore this.

        Raises:
            SandboxError: if the provider rejects the request.
        """

    def __repr__(self) -> str:  # pragma: no cover
        return f"{type(self).__name__}(id={self.environment_id!r})"


# ---------------------------------------------------------------------------
# E2B provider
# ---------------------------------------------------------------------------


class E2BEnvironment(RemoteEnvironment):
    """E2B cloud sandbox.

    Args:
        api_key:  E2B API key.
        template: Sandbox template name.
        timeout:  Initial sandbox lifetime in seconds.  The workspace registry
                  extends it through :meth:`keep_alive` on every use.
    """

    name = "e2b"

    def __init__(self, api_key: str, template: str = "base", timeout: int = 1800) -> None:
        super().__init__()
        from e2b import Sandbox

        self._sandbox = Sandbox.create(template=template, timeout=timeout, api_key=api_key)
        logger.info("sandbox.e2b: created %s", self._sandbox.sandbox_id)

    @property
    def environment_id(self) -> str:
        return self._sandbox.sandbox_id

    def _exec(self, command: str, timeout: float, cwd: str | None) -> CommandResult:
        from e2b import CommandExitException, TimeoutException

        try:
            result = self._sandbox.commands.run(command, cwd=cwd, timeout=timeout)
        except CommandExitException as exc:
            # The SDK raises on nonzero exit; callers want the result instead.
            return CommandResult(exit_code=exc.exit_code, stdout=exc.stdout or "", stderr=exc.stderr or "")
        except TimeoutException as exc:
            return CommandResult(exit_code=124, stderr=f"timed out after {timeout}s: {exc}")
        return CommandResult(exit_code=result.exit_code, stdout=result.stdout or "", stderr=result.stderr or "")

    def read_file(self, path: str) -> str:
        try:
            return self._sandbox.files.read(path)
        except Exception as exc:
            raise SandboxError(f"cannot read {path}: {exc}") from exc

    def write_file(self, path: str, content: str) -> None:
        try:
            self._sandbox.files.write(path, content)
        except Exception as exc:
            raise SandboxError(f"cannot write {path}: {exc}") from exc

    def keep_alive(self, seconds: float) -> None:
        try:
            self._sandbox.set_timeout(int(seconds))
        except Exception as exc:
            raise SandboxError(f"cannot extend {self.environment_id}: {exc}") from exc

    def kill(self) -> None:
        self._sandbox.kill()
        logger.info("sandbox.e2b: killed %s", self.environment_id)


# ---------------------------------------------------------------------------
# Local provider
# ---------------------------------------------------------------------------


class LocalEnvironment(RemoteEnvironment):
    """A private host directory standing in for a remote sandbox.

    Absolute paths used by the pipeline (``/home/user/project/...``) are
    mapped below *root*.  ``/home/user`` is rewritten in command strings on
    the way in and in command output on the way out, so the same command
    strings and paths work for both providers.

    Args:
        root: Directory that plays the role of ``/`` for this environment.
              Created if missing.
    """

    name = "local"

    def __init__(self, root: Path) -> None:
        super().__init__()
        self._root = Path(root).expanduser().resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._id = self._root.name

    @property
    def environment_id(self) -> str:
        return self._id

    @property
    def root(self) -> Path:
        return self._root

    def host_path(self, path: str) -> Path:
        """Translate an environment path to the host path below the root."""
        return self._root / path.lstrip("/")

    def _to_host(self, text: str) -> str:
        return text.replace("/home/user", str(self._root / "home" / "user"))

    def _from_host(self, text: str) -> str:
        return text.replace(str(self._root / "home" / "user"), "/home/user")

    def _exec(self, command: str, timeout: float, cwd: str | None) -> CommandResult:
        workdir = self.host_path(cwd) if cwd else self._root
        logger.debug("sandbox.local | cwd=%s | %s", workdir, command)
        try:
            result = subprocess.run(
                self._to_host(command),
                shell=True,
                cwd=str(workdir),
                capture_output=True,
                text=True,
                timeout=timeout,
                encoding="utf-8",
                errors="replace",
            )
        except subprocess.TimeoutExpired:
            return CommandResult(exit_code=124, stderr=f"timed out after {timeout}s")
        except OSError as exc:
            return CommandResult(exit_code=127, stderr=str(exc))
        return CommandResult(
            exit_code=result.returncode,
            stdout=self._from_host(result.stdout),
            stderr=self._from_host(result.stderr),
        )

    def read_file(self, path: str) -> str:
        target = self.host_path(path)
        try:
            return target.read_text(encoding="utf-8")
        except OSError as exc:
            raise SandboxError(f"cannot read {path}: {exc}") from exc

    def write_file(self, path: str, content: str) -> None:
        target = self.host_path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise SandboxError(f"cannot write {path}: {exc}") from exc

    def kill(self) -> None:
        shutil.rmtree(self._root, ignore_errors=True)
        logger.info("sandbox.local: removed %s", self._root)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_environment(settings=None) -> RemoteEnvironment:
    """Build a new environment for the configured ``SANDBOX_PROVIDER``.

    Raises:
        SandboxError: for an unknown provider.
    """
    if settings is None:
        from app.core.config import get_settings
        settings = get_settings()

    provider = settings.sandbox_provider
    if provider == "e2b":
        return E2BEnvironment(
            api_key=settings.e2b_api_key,
            template=settings.e2b_template,
            timeout=settings.workspace_ttl_seconds,
        )
    if provider == "local":
        root = Path(settings.local_sandbox_root) / uuid.uuid4().hex[:12]
        return LocalEnvironment(root)
    raise SandboxError(f"Unknown sandbox provider {provider!r}. Must be 'e2b' or 'local'.")
