# /app/app/config.py

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Единый конфиг проекта. Читает переменные окружения.
    Pydantic v2 + pydantic-settings.
    """
    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
    )

    # --- Основные настройки ---
    ENVIRONMENT: str = Field("dev", description="Application environment (dev, test, prod)")

    # --- База данных ---
    DATABASE_URL: str = Field(..., description="Async database connection URL (e.g., postgresql+asyncpg://...)")

    # --- Redis / Celery ---
    REDIS_URL: str = Field("redis://redis:6379/0", description="URL for Redis connection")
    CELERY_BROKER_URL: Optional[str] = Field(None, description="Celery broker URL (defaults to REDIS_URL)")
    CELERY_RESULT_BACKEND: Optional[str] = Field(None, description="Celery result backend URL (defaults to REDIS_URL)")

    # --- JWT / cron ---
    JWT_SECRET_KEY: str = Field(..., description="Secret key for verifying JWT tokens")
    JWT_ALGORITHM: str = Field("HS256", description="Algorithm for JWT signing")
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(60, description="Lifetime of tokens minted by create_access_token")
    CRON_SECRET: Optional[str] = Field(None, description="Bearer secret required by the cron trigger endpoint")

    # --- Calendar providers ---
    CALENDAR_PROVIDERS_ENABLED: List[str] = Field(
        default_factory=lambda: ["noop", "google", "outlook"],
        description="Provider keys accepted by the connect endpoints",
    )
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_REDIRECT_URI: Optional[str] = None
    MICROSOFT_CLIENT_ID: Optional[str] = None
    MICROSOFT_CLIENT_SECRET: Optional[str] = None
    MICROSOFT_REDIRECT_URI: Optional[str] = None
    MICROSOFT_TENANT: str = Field("common", description="Azure AD tenant used for the token endpoint")
    EVENT_TIMEZONE: str = Field("UTC", description="Timezone name sent to providers with event times")

    # --- Token lifecycle ---
    TOKEN_REFRESH_MARGIN_SECONDS: int = Field(300, description="Refresh when less than this lifetime remains")
    PROVIDER_TIMEOUT_SECONDS: float = Field(10.0, description="Upper bound for a single provider call")

    # --- Sync ---
    SYNC_WINDOW_MONTHS_BACK: int = Field(3, description="Pull window start, months before now")
    SYNC_WINDOW_MONTHS_FORWARD: int = Field(6, description="Pull window end, months after now")
    SYNC_PUSH_CONCURRENCY: int = Field(4, description="Concurrent provider calls within one push batch")
    SYNC_PUSH_CLAIM_SECONDS: int = Field(5 * 60, description="Lease on an event taken by a push pass; expired leases can be re-claimed")
    SYNC_INTERVAL_SECONDS: int = Field(15 * 60, description="Beat interval for the pull/push sweep")
    DEFAULT_EVENT_TYPE: str = Field("other", description="event_type assigned to events pulled from a provider")

    # --- Reminders ---
    REMINDER_SWEEP_INTERVAL_SECONDS: int = Field(5 * 60, description="Beat interval for the reminder dispatcher")
    REMINDER_LEAD_HOURS: int = Field(24, description="How long before a milestone its reminder becomes due")

    # --- Динамические значения по умолчанию для Celery ---
    @model_validator(mode='after')
    def set_celery_defaults(self) -> 'Settings':
        if self.CELERY_BROKER_URL is None:
            log.debug("Setting CELERY_BROKER_URL default from REDIS_URL")
            self.CELERY_BROKER_URL = self.REDIS_URL
        if self.CELERY_RESULT_BACKEND is None:
            log.debug("Setting CELERY_RESULT_BACKEND default from REDIS_URL")
            self.CELERY_RESULT_BACKEND = self.REDIS_URL
        return self


try:
    settings = Settings()
    log.info("Settings loaded successfully for ENVIRONMENT=%s", settings.ENVIRONMENT)
    log.debug("Loaded settings: DB URL=%s..., Redis URL=%s, providers=%s",
              str(settings.DATABASE_URL)[:25],
              settings.REDIS_URL,
              settings.CALENDAR_PROVIDERS_ENABLED)
except Exception:
    log.exception("Failed to instantiate Settings.")
    raise
