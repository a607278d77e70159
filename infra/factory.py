"""Forge client factory.

:func:`get_github_client` is the single entry-point for obtaining a
``ForgeClient`` instance.  It reads the token and API URL from the
application config unless they are passed explicitly.

Usage::

    from infra.factory import get_github_client

    client = get_github_client()
    user = client.get_authenticated_user()
"""

from __future__ import annotations

from infra.github_client import GitHubClient


def _settings():  # pragma: no cover — thin wrapper, tested via integration
    """Lazy import to avoid circular imports and allow test overrides."""
    from app.core.config import get_settings
    return get_settings()


def get_github_client(token: str = "", base_url: str = "") -> GitHubClient:
    """Return a GitHub client.

    Uses ``GITHUB_TOKEN`` and ``GITHUB_API_URL`` from config if not provided.

    Args:
        token:    Optional PAT override.
        base_url: Optional API base URL override (GitHub Enterprise, tests).
    """
    if not token or not base_url:
        try:
            s = _settings()
            token    = token    or getattr(s, "github_token", "") or ""
            base_url = base_url or getattr(s, "github_api_url", "") or "https://api.github.com"
        except Exception:  # settings not available (e.g. unit tests without .env)
            base_url = base_url or "https://api.github.com"
    return GitHubClient(token=token, base_url=base_url)
