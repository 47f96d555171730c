"""Moach server entry point."""

import logging
import sys

from aiohttp import web

from src.config import settings
from src.logs import frontend_logger

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
)
frontend_logger.setLevel(settings.frontend_log_level.upper())
logger = logging.getLogger(__name__)


def main() -> None:
    """Start the HTTP server."""
    if not settings.database_configured():
        logger.critical("TURSO_DATABASE_URL is not set; refusing to start")
        sys.exit(1)
    if not settings.turso_database_url:
        logger.warning("TURSO_DATABASE_URL not set, using local database %s", settings.database_path)
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is empty; chat requests will fail")
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is empty; memory tools will fail")

    from src.web.server import create_app

    logger.info("Starting Moach on %s:%d", settings.host, settings.port)
    web.run_app(create_app(), host=settings.host, port=settings.port, print=None)


if __name__ == "__main__":
    main()
