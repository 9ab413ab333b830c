"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from backend.carenest.core.config import settings
    print(settings.PANIC_RATE_LIMIT_SECONDS)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "CareNest Safety Core"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Store ──
    STORE_BACKEND: str = "memory"  # memory | sql
    DATABASE_URL: str = "sqlite:///./carenest.db"
    DATABASE_ECHO: bool = False  # log SQL statements

    # ── Location ingest ──
    LOCATION_MAX_AGE_SECONDS: int = 300  # stale/replayed samples are rejected
    LOCATION_MAX_FUTURE_SKEW_SECONDS: int = 60  # device clock drift allowance
    LOCATION_MAX_ACCURACY_METERS: float = 100.0

    # ── Producer-side throttling (off by default) ──
    LOCATION_THROTTLE_ENABLED: bool = False
    LOCATION_MIN_INTERVAL_SECONDS: float = 5.0
    LOCATION_MIN_DISPLACEMENT_METERS: float = 10.0
    LOCATION_DISPLACEMENT_WINDOW_SECONDS: float = 15.0

    # ── Geofence evaluation ──
    EVALUATOR_BATCH_SIZE: int = 10
    MEMBERSHIP_MAX_RETRIES: int = 3

    # ── Panic ──
    PANIC_RATE_LIMIT_SECONDS: int = 60
    PANIC_DEFAULT_MESSAGE: str = "Emergency! Child needs help!"
    PANIC_DIRECT_NOTIFY: bool = True  # trigger sends SMS itself; dispatcher skips PANIC

    # ── Messaging ──
    SMS_PROVIDER: str = "simulation"  # simulation | http
    SMS_GATEWAY_URL: Optional[str] = None
    SMS_API_KEY: Optional[str] = None
    SMS_SENDER_ID: str = "CareNest"
    SMS_TIMEOUT_SECONDS: float = 15.0
    ALERT_SMS_PREFIX: str = "CareNest Alert"

    # ── Change stream ──
    CHANGE_STREAM_MAX_REDELIVERIES: int = 3

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
