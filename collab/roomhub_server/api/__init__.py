"""
HTTP transport for RoomHub.

This module provides:
- create_app: FastAPI application factory
- Settings: HTTP bind and CORS settings
"""

from .app import create_app, status_for
from .settings import Settings

__all__ = ["create_app", "status_for", "Settings"]
