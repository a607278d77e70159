"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration for forkpilot. Reads from .env automatically."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # LLM API keys (only required for the providers you actually use)
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # Ollama base URL — set this when using local Ollama models
    # Example: OLLAMA_BASE_URL=http://localhost:11434
    ollama_base_url: str = "http://localhost:11434"

    # Model identifiers — prefix determines the provider:
    #   "ollama:<model>"     → local Ollama  (e.g. "ollama:llama3.1:70b")
    #   "claude-*" / "claude" → Anthropic API
    #   anything else        → OpenAI API    (e.g. "gpt-4o", "gpt-4o-mini")
    selector_model: str = "gpt-4o-mini"   # search tool choice + file narrowing
    generator_model: str = "gpt-4o"       # structured file operations

    # ── GitHub ─────────────────────────────────────────────────────────
    # Personal access token with `repo` scope.  Used for identity lookup,
    # forking, pushing to the fork and opening the pull request.
    github_token: str = ""
    github_api_url: str = "https://api.github.com"

    # Git author identity.  Empty → the authenticated GitHub login is used.
    git_author_name: str = ""
    git_author_email: str = ""

    # Fork creation is asynchronous on GitHub's side.
    fork_poll_attempts: int = 10
    fork_poll_interval_seconds: float = 2.0

    # ── Execution environment ──────────────────────────────────────────
    # "e2b"   → E2B cloud sandbox (needs E2B_API_KEY)
    # "local" → subprocess inside LOCAL_SANDBOX_ROOT (development only)
    sandbox_provider: str = "e2b"
    e2b_api_key: str = ""
    e2b_template: str = "base"
    local_sandbox_root: str = "~/forkpilot-sandboxes"

    @field_validator("local_sandbox_root")
    @classmethod
    def _resolve_sandbox_root(cls, value: str) -> str:
        if value:
            return str(Path(value).expanduser().resolve())
        return value

    @field_validator("sandbox_provider")
    @classmethod
    def _normalise_provider(cls, value: str) -> str:
        return value.strip().lower()

    # Where the fork is cloned inside the environment.
    repo_dir: str = "/home/user/project"

    # Workspaces are destroyed after this much inactivity.
    workspace_ttl_seconds: int = 30 * 60

    # Timeouts (seconds)
    search_timeout_seconds: int = 30
    command_timeout_seconds: int = 180
    push_timeout_seconds: int = 120
    clone_timeout_seconds: int = 300
    git_install_timeout_seconds: int = 600
    generation_timeout_seconds: int = 300

    # Discovery / prompt limits
    max_candidate_files: int = 20
    file_tree_limit: int = 100

    # Web
    web_host: str = "127.0.0.1"
    web_port: int = 3000

    # Logging
    log_level: str = "INFO"
    log_file: str = "logs/forkpilot.log"


_settings: Settings | None = None


def get_settings() -> Settings:
    """Singleton accessor."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
