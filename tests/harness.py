"""A Pipeline wired to in-memory collaborators, shared by the pipeline and web tests."""

from __future__ import annotations

import json

from langchain_core.language_models.fake_chat_models import FakeListChatModel

from app.agents.generation import OutputChannel
from app.core.config import Settings
from app.core.pipeline import ChatInput, Pipeline
from fakes import FakeEnvironment, FakeForge, ManualScheduler, ScriptedModel
from infra.sandbox import CommandResult
from infra.workspace import WorkspaceRegistry

REPO = "/home/user/project"
MATH = f"{REPO}/src/math.ts"
MATH_TS = "export function add(a: number, b: number): number {\n  return a + b;\n}\n"
REPO_URL = "https://github.com/acme/calc"
REQUEST = "add a subtract function to math.ts"
COMMIT = "9c4f1e2a7b3d5c6e8f90a1b2c3d4e5f6a7b8c9d0"
NOW = 1_700_000_000

SUBTRACT = "\n\nexport function subtract(a: number, b: number): number {\n  return a - b;\n}"
GENERATION = json.dumps({
    "fileOperations": [{
        "type": "updateFile",
        "path": MATH,
        "searchReplace": [{"search": "return a + b;\n}", "replace": "return a + b;\n}" + SUBTRACT}],
    }],
    "shellCommands": [],
    "explanation": "Adds subtract next to add.",
})


def make_settings(**overrides) -> Settings:
    values = dict(
        github_token="ghp_secret",
        openai_api_key="sk-test",
        anthropic_api_key="",
        selector_model="gpt-4o-mini",
        generator_model="gpt-4o",
        sandbox_provider="local",
        e2b_api_key="",
        git_author_name="",
        git_author_email="",
        fork_poll_attempts=3,
        fork_poll_interval_seconds=0,
        generation_timeout_seconds=5,
    )
    values.update(overrides)
    return Settings(**values)


def make_selector(*, tool_reply='{"tool": "glob", "query": "math.ts"}', narrowing_reply=MATH):
    """Selector model answering tool selection, then narrowing (and cycling)."""
    return FakeListChatModel(responses=[tool_reply, narrowing_reply])


class Harness:
    """A pipeline wired to fakes, plus handles on everything it touches."""

    def __init__(self, selector=None, generator=None, responses=(), forge=None):
        self.environments: list[FakeEnvironment] = []
        self.responses = list(responses)
        self.forge = forge or FakeForge()
        self.registry = WorkspaceRegistry(self._environment, scheduler=ManualScheduler())
        self.generator = generator or ScriptedModel([GENERATION[:40], GENERATION[40:]])
        self.pipeline = Pipeline(
            self.registry,
            forge_factory=lambda: self.forge,
            selector_llm=selector or make_selector(),
            generator_llm=self.generator,
            settings=make_settings(),
            clock=lambda: NOW,
            sleep=lambda _s: None,
        )

    def _environment(self) -> FakeEnvironment:
        env = FakeEnvironment(
            files={MATH: MATH_TS, f"{REPO}/src/index.ts": "export * from './math';\n"},
            responses=[
                *self.responses,
                ("-name math.ts", CommandResult(0, f"{MATH}\n{REPO}/node_modules/x/math.ts\n")),
                ("| head", CommandResult(0, f"{MATH}\n{REPO}/src/index.ts\n{REPO}/package.json\n")),
                ("rev-parse HEAD", CommandResult(0, COMMIT + "\n")),
            ],
        )
        self.environments.append(env)
        return env

    async def run(self, project_id="p1", request=REQUEST, repo_url=REPO_URL):
        """prepare + execute one request; returns ``(prepared, payload, streamed text)``."""
        chat = ChatInput(repo_url=repo_url, user_request=request, project_id=project_id)
        self.registry.try_acquire(project_id)
        prepared = await self.pipeline.prepare(chat)
        channel = OutputChannel()
        payload = await self.pipeline.execute(prepared, channel)
        text = "".join([chunk async for chunk in channel])
        return prepared, payload, text
