"""
COLSOF API main entry
Serves the support-desk REST API with uvicorn
"""

import sys

import uvicorn
from loguru import logger

from colsof.api.app import create_app
from colsof.settings import load_settings


def main() -> None:
    """Main function"""
    settings = load_settings()

    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())

    logger.info(f"Starting COLSOF API on {settings.host}:{settings.port}...")
    if settings.serverless:
        logger.info("Serverless mode: connection pool limited to 3")

    try:
        uvicorn.run(
            create_app(settings),
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    finally:
        logger.info("COLSOF API stopped")


if __name__ == "__main__":
    main()
