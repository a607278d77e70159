"""Shared helpers used across the discovery and publish nodes."""
from __future__ import annotations

import json
from typing import Any

from langchain_core.runnables import RunnableConfig


def _configurable(config: RunnableConfig | None, key: str, default: Any = None) -> Any:
    """Fetch a collaborator (environment, forge client, model, …) from the run config."""
    if not config:
        return default
    return (config.get("configurable") or {}).get(key, default)


def _message_text(message: Any) -> str:
    """Return the text content of a chat model message or chunk."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    text = ""
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                text += part.get("text", "")
            elif isinstance(part, str):
                text += part
    return text


def _strip_fences(text: str) -> str:
    """Remove an optional ```json / ``` markdown fence around *text*."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.splitlines()
        inner = "\n".join(line for line in lines[1:] if not line.strip().startswith("```"))
        text = inner.strip()
    return text


def _parse_json_object(text: str) -> dict | None:
    """Parse a JSON object from model output.  Handles fences and preamble text."""
    text = _strip_fences(text or "")
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    # Fallback: the outermost {...} in the text
    start = text.find("{")
    end = text.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            parsed = json.loads(text[start:end])
        except json.JSONDecodeError:
            return None
        if isinstance(parsed, dict):
            return parsed
    return None
