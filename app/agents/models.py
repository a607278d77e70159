"""LLM model configuration and factory.

Provider routing is done via model name prefix:
  - "ollama:<model>"  → local Ollama  (e.g. "ollama:llama3.1:70b")
  - "claude-*"        → Anthropic API
  - anything else     → OpenAI API   (e.g. "gpt-4o", "gpt-4o-mini")

Two roles exist:
  - "selector"  (SELECTOR_MODEL)  — search tool choice and file narrowing
  - "generator" (GENERATOR_MODEL) — the structured file operations
"""

from __future__ import annotations

from typing import Literal

from langchain_core.language_models import BaseChatModel

from app.core.config import Settings, get_settings
from app.core.logging import get_logger

logger = get_logger("agents.models")

ModelRole = Literal["selector", "generator"]


# ---------------------------------------------------------------------------
# Provider detection
# ---------------------------------------------------------------------------

def _is_ollama_model(model_name: str) -> bool:
    """Models prefixed with 'ollama:' are served by local Ollama."""
    return model_name.lower().startswith("ollama:")


def _is_anthropic_model(model_name: str) -> bool:
    """Anthropic models contain 'claude' in their name."""
    return "claude" in model_name.lower()


def _strip_ollama_prefix(model_name: str) -> str:
    return model_name[len("ollama:"):]


# ---------------------------------------------------------------------------
# LLM constructors
# ---------------------------------------------------------------------------

def _make_ollama(model: str, base_url: str, temperature: float = 0.1) -> BaseChatModel:
    from langchain_ollama import ChatOllama

    bare_model = _strip_ollama_prefix(model)
    logger.info("Using Ollama model '%s' at %s", bare_model, base_url)
    return ChatOllama(model=bare_model, base_url=base_url, temperature=temperature)


def _make_anthropic(model: str, api_key: str, temperature: float = 0.1, max_tokens: int = 8192) -> BaseChatModel:
    from langchain_anthropic import ChatAnthropic

    logger.info("Using Anthropic model '%s'", model)
    return ChatAnthropic(model=model, api_key=api_key, temperature=temperature, max_tokens=max_tokens)


def _make_openai(model: str, api_key: str, temperature: float = 0.2, max_tokens: int = 8192) -> BaseChatModel:
    from langchain_openai import ChatOpenAI

    logger.info("Using OpenAI model '%s'", model)
    return ChatOpenAI(model=model, api_key=api_key, temperature=temperature, max_tokens=max_tokens)


# ---------------------------------------------------------------------------
# Key validation helpers
# ---------------------------------------------------------------------------

def _normalized_secret(value: str | None) -> str:
    return (value or "").strip()


def _require_openai_key(role: ModelRole, model: str, api_key: str) -> str:
    key = _normalized_secret(api_key)
    if key:
        return key
    raise ValueError(
        f"Missing OPENAI_API_KEY for role '{role}' with model '{model}'. "
        "Set OPENAI_API_KEY in .env or switch to an Ollama / Anthropic model."
    )


def _require_anthropic_key(role: ModelRole, model: str, api_key: str) -> str:
    key = _normalized_secret(api_key)
    if key:
        return key
    raise ValueError(
        f"Missing ANTHROPIC_API_KEY for role '{role}' with model '{model}'. "
        "Set ANTHROPIC_API_KEY in .env or switch to an OpenAI / Ollama model."
    )


def model_for_role(role: ModelRole, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    if role == "selector":
        return settings.selector_model
    if role == "generator":
        return settings.generator_model
    raise ValueError(f"Unknown model role: {role}")


def missing_model_credentials(settings: Settings | None = None) -> list[str]:
    """Return the env keys that are required by the configured models but empty.

    Used by the pipeline to fail fast before any workspace work.
    """
    settings = settings or get_settings()
    missing: list[str] = []
    for role in ("selector", "generator"):
        model = model_for_role(role, settings)
        if _is_ollama_model(model):
            continue
        if _is_anthropic_model(model):
            if not _normalized_secret(settings.anthropic_api_key) and "ANTHROPIC_API_KEY" not in missing:
                missing.append("ANTHROPIC_API_KEY")
        elif not _normalized_secret(settings.openai_api_key) and "OPENAI_API_KEY" not in missing:
            missing.append("OPENAI_API_KEY")
    return missing


# ---------------------------------------------------------------------------
# Core builder — routes to the correct provider
# ---------------------------------------------------------------------------

def _build_for_model(
    role: ModelRole,
    model: str,
    openai_api_key: str,
    anthropic_api_key: str,
    ollama_base_url: str,
    temperature: float,
    max_tokens: int = 8192,
) -> BaseChatModel:
    """Build an LLM for *any* supported provider based on the model string."""
    if _is_ollama_model(model):
        return _make_ollama(model, base_url=ollama_base_url, temperature=temperature)

    if _is_anthropic_model(model):
        key = _require_anthropic_key(role, model, anthropic_api_key)
        return _make_anthropic(model, key, temperature=temperature, max_tokens=max_tokens)

    key = _require_openai_key(role, model, openai_api_key)
    return _make_openai(model, key, temperature=temperature, max_tokens=max_tokens)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_llm(role: ModelRole) -> BaseChatModel:
    """Create an LLM instance for the given role.

    The provider is determined entirely by the model string in .env —
    no provider is hardcoded.
    """
    settings = get_settings()

    kwargs = dict(
        openai_api_key=settings.openai_api_key,
        anthropic_api_key=settings.anthropic_api_key,
        ollama_base_url=settings.ollama_base_url,
    )

    if role == "selector":
        return _build_for_model(role=role, model=settings.selector_model, temperature=0.0, max_tokens=2048, **kwargs)

    if role == "generator":
        return _build_for_model(role=role, model=settings.generator_model, temperature=0.1, **kwargs)

    raise ValueError(f"Unknown model role: {role}")
