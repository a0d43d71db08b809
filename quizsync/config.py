"""
Configuration settings for quizsync.

Uses Pydantic Settings for environment variable management with .env file support.
Every variable is prefixed with QUIZSYNC_ (e.g. QUIZSYNC_HUB_PORT=9000).
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="QUIZSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Hub (local relay server)
    # ========================================
    hub_host: str = Field(
        default="0.0.0.0",
        description="Interface the Hub listens on",
    )
    hub_port: int = Field(
        default=8080,
        description="Port for websocket connections and /health, /info",
    )
    heartbeat_interval_seconds: float = Field(
        default=30.0,
        description="Liveness sweep period; dead sockets survive at most two periods",
    )
    cleanup_interval_seconds: float = Field(
        default=60.0,
        description="Retention sweep period",
    )
    retention_seconds: int = Field(
        default=3600,
        description="Responses older than this are dropped by the retention sweep",
    )
    shutdown_grace_seconds: float = Field(
        default=5.0,
        description="Upper bound on closing sockets during shutdown",
    )
    probe_timeout_seconds: float = Field(
        default=5.0,
        description="How long a liveness sweep waits on ping writes before moving on",
    )

    # ========================================
    # Relay link / reconnect
    # ========================================
    connect_timeout_ms: int = Field(
        default=5000,
        description="Timeout for opening a relay link",
    )
    reconnect_max_attempts: int = Field(
        default=5,
        description="Reconnect attempts before falling back to offline",
    )
    reconnect_base_delay_ms: int = Field(
        default=2000,
        description="Linear backoff step between reconnect attempts",
    )

    # ========================================
    # Local cache
    # ========================================
    cache_path: Path | None = Field(
        default=Path.home() / ".quizsync" / "cache.db",
        description="SQLite file for the client cache (None keeps it in memory)",
    )

    # ========================================
    # Remote store
    # ========================================
    remote_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the authoritative response store",
    )
    remote_api_key: str | None = Field(
        default=None,
        description="API key sent as X-API-Key to the remote store",
    )
    remote_timeout_seconds: float = Field(
        default=10.0,
        description="HTTP timeout for remote store calls",
    )
    remote_poll_interval_seconds: float = Field(
        default=5.0,
        description="Polling period backing remote subscriptions",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
