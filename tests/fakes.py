"""Test doubles: an in-memory environment, a forge client, a chat model, a manual scheduler and clock."""

from __future__ import annotations

import asyncio
import shlex

from langchain_core.messages import AIMessage, AIMessageChunk

from infra.forge import ForgeError, ForgeUser, ForkInfo, PRRequest, PRResult, Upstream
from infra.sandbox import CommandResult, RemoteEnvironment, SandboxError


class FakeEnvironment(RemoteEnvironment):
    """In-memory filesystem; shell commands are recorded and answered from a script.

    ``responses`` is a list of ``(needle, CommandResult)``; the first entry whose
    needle occurs in the command wins.  Unmatched commands succeed silently.
    """

    name = "fake"

    def __init__(self, files: dict[str, str] | None = None, responses=None, git_ready: bool = True) -> None:
        super().__init__()
        self.files: dict[str, str] = dict(files or {})
        self.responses: list[tuple[str, CommandResult]] = list(responses or [])
        self.commands: list[str] = []
        self.cwds: list[str | None] = []
        self.killed = False
        self.lifetimes: list[float] = []
        self._git_ready = git_ready

    @property
    def environment_id(self) -> str:
        return "fake-env"

    def _exec(self, command: str, timeout: float, cwd: str | None) -> CommandResult:
        self.commands.append(command)
        self.cwds.append(cwd)
        for needle, result in self.responses:
            if needle in command:
                return result
        if command.startswith("rm -f "):
            for path in shlex.split(command)[2:]:
                self.files.pop(path, None)
        return CommandResult(exit_code=0)

    def read_file(self, path: str) -> str:
        try:
            return self.files[path]
        except KeyError:
            raise SandboxError(f"cannot read {path}: no such file") from None

    def write_file(self, path: str, content: str) -> None:
        self.files[path] = content

    def keep_alive(self, seconds: float) -> None:
        self.lifetimes.append(seconds)

    def kill(self) -> None:
        self.killed = True

    def commands_matching(self, needle: str) -> list[str]:
        return [c for c in self.commands if needle in c]


class FakeForge:
    """ForgeClient double with call counters."""

    token = "ghp_secret"

    def __init__(
        self,
        login: str = "octo",
        fork_exists: bool = True,
        ready_after: int = 1,
        default_branch: str = "main",
        pr_error: ForgeError | None = None,
    ) -> None:
        self.login = login
        self.fork_exists = fork_exists
        self.ready_after = ready_after
        self.default_branch = default_branch
        self.pr_error = pr_error
        self.create_fork_calls = 0
        self.exists_checks = 0
        self.prs: list[tuple[Upstream, PRRequest]] = []

    def _fork(self, upstream: Upstream) -> ForkInfo:
        return ForkInfo(
            exists=True,
            clone_url=f"https://github.com/{self.login}/{upstream.repo}.git",
            fork_owner=self.login,
            name=upstream.repo,
        )

    def get_authenticated_user(self) -> ForgeUser:
        return ForgeUser(login=self.login, email=None)

    def get_fork(self, upstream: Upstream, login: str) -> ForkInfo:
        return self._fork(upstream) if self.fork_exists else ForkInfo(exists=False)

    def create_fork(self, upstream: Upstream) -> ForkInfo:
        self.create_fork_calls += 1
        return self._fork(upstream)

    def repository_exists(self, owner: str, repo: str) -> bool:
        self.exists_checks += 1
        if self.exists_checks >= self.ready_after:
            self.fork_exists = True
            return True
        return False

    def get_default_branch(self, upstream: Upstream) -> str:
        return self.default_branch

    def create_pr(self, upstream: Upstream, pr: PRRequest) -> PRResult:
        if self.pr_error is not None:
            raise self.pr_error
        self.prs.append((upstream, pr))
        number = len(self.prs)
        return PRResult(number=number, url=f"https://github.com/{upstream.full_name}/pull/{number}")

    def authenticated_url(self, clone_url: str) -> str:
        return clone_url.replace("https://", f"https://{self.token}@", 1)


class ManualScheduler:
    """Scheduler whose timers only fire when the test says so."""

    class Timer:
        def __init__(self, delay, callback):
            self.delay = delay
            self.callback = callback
            self.cancelled = False

        def cancel(self) -> None:
            self.cancelled = True

    def __init__(self) -> None:
        self.timers: list[ManualScheduler.Timer] = []

    def schedule(self, delay, callback):
        timer = ManualScheduler.Timer(delay, callback)
        self.timers.append(timer)
        return timer

    def fire_pending(self) -> int:
        """Fire every uncancelled timer scheduled so far.  Returns how many fired."""
        pending = [t for t in self.timers if not t.cancelled]
        self.timers = []
        for timer in pending:
            timer.callback()
        return len(pending)


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds




class ScriptedModel:
    """Chat model double for generation: streams *chunks*, then optionally fails.

    ``delay`` seconds are awaited before each chunk.  With ``streaming=False``
    ``astream`` raises NotImplementedError and ``ainvoke`` answers instead.
    """

    def __init__(self, chunks, error: Exception | None = None, delay: float = 0.0, streaming: bool = True) -> None:
        self.chunks = list(chunks)
        self.error = error
        self.delay = delay
        self.streaming = streaming
        self.prompts: list = []

    async def astream(self, messages):
        self.prompts.append(messages)
        if not self.streaming:
            raise NotImplementedError
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield AIMessageChunk(content=chunk)
        if self.error is not None:
            raise self.error

    async def ainvoke(self, messages):
        return AIMessage(content="".join(self.chunks))
