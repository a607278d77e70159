"""forkpilot main entry point.

Starts the FastAPI web server.
"""

from __future__ import annotations

import uvicorn

from app.core.config import get_settings
from app.core.logging import get_logger, setup_logging


def main():
    """Entry point: starts the web server."""
    setup_logging()
    logger = get_logger("main")
    settings = get_settings()

    logger.info("=" * 60)
    logger.info("forkpilot starting")
    logger.info("=" * 60)

    if not settings.github_token.strip():
        logger.error("GITHUB_TOKEN not set - chat requests will be rejected")

    if settings.sandbox_provider == "e2b" and not settings.e2b_api_key.strip():
        logger.error("E2B_API_KEY not set - the e2b sandbox provider will fail")
    elif settings.sandbox_provider == "local":
        logger.warning("SANDBOX_PROVIDER=local - commands run on this host without isolation")

    logger.info("Models: selector=%s generator=%s", settings.selector_model, settings.generator_model)
    logger.info("Web API: http://%s:%d", settings.web_host, settings.web_port)

    config = uvicorn.Config(
        "app.web.server:app",
        host=settings.web_host,
        port=settings.web_port,
        log_level=settings.log_level.lower(),
        reload=False,
    )
    server = uvicorn.Server(config)

    try:
        server.run()
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
