"""Webhook inspector configuration."""

from __future__ import annotations

from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the webhook inspector."""

    host: str = "0.0.0.0"
    port: int = 3002
    log_level: str = "INFO"

    # Signature policy
    webhook_secret: str = ""
    strict_signatures: bool = False  # reject invalid signatures with 401

    # Storage (empty database_url -> in-memory store)
    database_url: str = ""

    # Retention
    retention_days: int = 30
    keep_count: int = 10000
    retention_interval_seconds: int = 86400  # 0 disables the loop

    # Display timezone for stats and humanized timestamps
    timezone: str = "Africa/Douala"

    # Idempotency
    dedup_backend: str = "memory"  # memory | redis
    dedup_capacity: int = 1000
    redis_url: str = "redis://localhost:6379/0"

    # Live fan-out
    heartbeat_interval_seconds: float = 30.0

    # Replay
    replay_timeout_seconds: float = 10.0

    rate_limit: str = "100/minute"  # per client IP, on POST /webhook
    trust_proxy_headers: bool = False  # only behind a proxy that sets X-Forwarded-For
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    model_config = {"env_prefix": "INSPECTOR_", "env_file": ".env", "extra": "ignore"}

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @field_validator("dedup_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("memory", "redis"):
            raise ValueError("dedup_backend must be 'memory' or 'redis'")
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
