"""
Main entry point for the Atelier production engine.

This module initializes the application, sets up the database, starts the
reservation expiry sweep and serves the HTTP API.
"""

import argparse
import logging
import sys
import traceback

import uvicorn

from atelier.api import create_app
from atelier.services.database import close_connections, initialize_app_database
from atelier.utils.config import get_config

logger = logging.getLogger("atelier")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def initialize_application() -> bool:
    """
    Initialize the application.

    Creates the schema and seeds the default workflow stages.

    Returns:
        True if initialization successful, False otherwise
    """
    try:
        logger.info("Initializing database...")
        initialize_app_database()
        logger.info("Database initialized successfully")
        return True

    except Exception as e:
        logger.error(f"Failed to initialize application: {e}")
        traceback.print_exc()
        return False


def main(argv=None):
    """
    Main application entry point.

    Initializes the database and serves the API with the reservation sweep
    running in the background until the server stops.
    """
    parser = argparse.ArgumentParser(description="Atelier production engine")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument(
        "--no-sweeper", action="store_true", help="Do not run the reservation expiry sweep"
    )
    args = parser.parse_args(argv)

    config = get_config()
    configure_logging(config.log_level)
    logger.info(f"Starting {config.app_name} v{config.app_version}")
    logger.info(f"Environment: {config.environment}")

    if not initialize_application():
        logger.error("Application initialization failed. Exiting.")
        sys.exit(1)

    app = create_app(start_sweeper=not args.no_sweeper)
    try:
        uvicorn.run(app, host=args.host, port=args.port, log_level=config.log_level.lower())
    except Exception as e:
        logger.error(f"Server crashed: {e}")
        traceback.print_exc()
        sys.exit(1)
    finally:
        close_connections()

    logger.info("Server stopped")


if __name__ == "__main__":
    main()
