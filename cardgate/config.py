"""
Configuration and settings for the access service.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendType(str, Enum):
    FILE = "file"
    REDIS = "redis"
    MONGODB = "mongodb"


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api/v1")
    environment: str = Field(default="STANDARD")

    # Storage backend selection
    kv_backend: BackendType = Field(default=BackendType.FILE)
    kv_file_path: str = Field(default="./data")
    redis_uri: Optional[str] = Field(default=None)
    redis_socket_timeout_seconds: float = Field(default=5.0, gt=0)
    mongodb_uri: Optional[str] = Field(default=None)

    # Per-request deadline handed to every backend call
    request_timeout_seconds: float = Field(default=5.0, gt=0)

    # HTTP server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8080, ge=1, le=65535)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
