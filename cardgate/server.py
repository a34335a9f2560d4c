"""
Command-line entry point that serves the app with uvicorn.
"""

from __future__ import annotations

import argparse
import logging

import uvicorn

from cardgate.config import get_settings

logger = logging.getLogger(__name__)


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="cardgate access service")
    parser.add_argument(
        "--host",
        type=str,
        default=settings.server_host,
        help="Interface to bind",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.server_port,
        help="Port to listen on",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )
    logger.info(
        "Starting cardgate on %s:%s (backend: %s, environment: %s)",
        args.host,
        args.port,
        settings.kv_backend.value,
        settings.environment,
    )
    uvicorn.run(
        "cardgate.app:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
