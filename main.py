"""
CONFLUX™ — Main Entry Point
Serves the market-data hub API.
"""
import uvicorn

from conflux.config.settings import get_settings
from conflux.utils.logger import get_logger, setup_logging

logger = get_logger("main")


def run_api():
    """Run the FastAPI application."""
    settings = get_settings()
    setup_logging()
    logger.info("starting_conflux", version=settings.version, port=settings.port)
    uvicorn.run(
        "conflux.api.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run_api()
