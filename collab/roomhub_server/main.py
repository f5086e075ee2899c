"""
RoomHub Server - Main entry point.

Startup order:
1. Read ServerConfig from the environment (abort on invalid values)
2. Install the root log handler (JSON or text)
3. Build the RoomHub services for the configured store backend
4. Serve the FastAPI app with uvicorn

Usage:
    python -m collab.roomhub_server.main
    roomhub-server

Environment variables are documented in config.py (core) and
api/settings.py (HTTP bind, CORS, identity header).

Invariants:
    - Configuration errors abort startup before anything is opened
    - The store is initialized before the first request is served

How to change safely:
    - Keep setup_logging() the only place that touches root handlers
    - uvicorn must keep log_config=None or it replaces our handlers
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter
import uvicorn

from .api import Settings, create_app
from .config import ServerConfig
from .server import RoomHub

logger = logging.getLogger(__name__)

TEXT_LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

# Loggers that are too chatty at INFO
QUIET_LOGGERS = ("uvicorn.access",)


def _formatter_for(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return json_log_formatter.JSONFormatter()
    return logging.Formatter(TEXT_LOG_FORMAT)


def setup_logging(config: ServerConfig) -> None:
    """Install a single stream handler on the root logger.

    Args:
        config: Server configuration (observability section is used)
    """
    observability = config.observability
    handler = logging.StreamHandler()
    handler.setFormatter(_formatter_for(observability.log_format))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, observability.log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def main() -> None:
    """Run the RoomHub HTTP server."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Invalid RoomHub configuration: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()

    settings = Settings()
    app = create_app(hub=RoomHub.from_config(config), settings=settings)

    logger.info(f"Starting RoomHub on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
