"""
HTTP settings for RoomHub.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """HTTP transport configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, description="Bind port")

    # CORS settings
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    # Identity header set by the upstream auth proxy
    user_header: str = Field(default="X-User-ID", description="Header carrying the caller's user id")

    model_config = {"env_prefix": "ROOMHUB_HTTP_"}
