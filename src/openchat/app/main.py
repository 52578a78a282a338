"""Run the OpenChat gateway.

Usage examples:
  - python -m openchat.app.main
  - python -m openchat.app.main --port 3000 --log-level DEBUG
"""

from __future__ import annotations

import argparse

import uvicorn

from openchat.api.gateway import create_app
from openchat.config.settings import settings
from openchat.utils.logging_config import get_logger, setup_logging


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the OpenChat gateway")
    parser.add_argument("--host", default=settings.API_HOST, help=f"Bind address (default: {settings.API_HOST})")
    parser.add_argument("--port", type=int, default=settings.API_PORT, help=f"Port (default: {settings.API_PORT})")
    parser.add_argument(
        "--log-level",
        default=settings.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help=f"Log level (default: {settings.LOG_LEVEL})",
    )
    args = parser.parse_args()

    setup_logging(level=args.log_level, component="gateway", log_path=settings.LOG_PATH)
    logger = get_logger(__name__)
    logger.info("Starting OpenChat", host=args.host, port=args.port)

    uvicorn.run(create_app(), host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
