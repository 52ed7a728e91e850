"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("APP_ENV", "dev").lower()

# Background reconciliation scheduler (optional)
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "0") in {
    "1",
    "true",
    "yes",
    "True",
    "YES",
}


class Settings(BaseSettings):
    """Environment configuration for the storebox backend."""

    app_env: str = ENV
    database_url: str = "sqlite:///storebox.db"
    SECRET_KEY: str = "change-me"
    ALLOW_DB_CREATE_ALL: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ALLOW_ORIGINS: list[str] = [
        "http://localhost:3000",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True

    # --- Session tokens (identity provider) -----------------------------
    SESSION_JWT_SECRET: str | None = None
    SESSION_JWT_ALGORITHM: str = "HS256"

    # --- Stripe ----------------------------------------------------------
    STRIPE_ENABLED: bool = False
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = Field(
        default=None,
        validation_alias=AliasChoices("STRIPE_WEBHOOK_SECRET", "PSP_WEBHOOK_SECRET"),
    )
    STRIPE_WEBHOOK_SECRET_NEXT: str | None = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # --- Bookings --------------------------------------------------------
    BOOKING_TIMEZONE: str = "Europe/Stockholm"
    DEFAULT_CURRENCY: str = "SEK"

    # --- Lock PIN provider -----------------------------------------------
    LOCK_PIN_PROVIDER: str = "stub"
    LOCK_CLIENT_ID: str | None = None
    LOCK_CLIENT_SECRET: str | None = None
    LOCK_DEVICE_ID: str | None = None
    LOCK_TOKEN_URL: str = "https://auth.igloohome.co/oauth2/token"
    LOCK_API_BASE_URL: str = "https://api.igloodeveloper.co/igloohome/devices"
    LOCK_TIMEZONE: str = "Europe/Stockholm"
    LOCK_PIN_MAX_ATTEMPTS: int = 3
    LOCK_PIN_RETRY_BACKOFF_SECONDS: float = 0.5
    LOCK_HTTP_TIMEOUT_SECONDS: float = 10.0

    # --- Email -----------------------------------------------------------
    EMAIL_ENABLED: bool = False
    SENDGRID_API_KEY: str | None = None
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    EMAIL_FROM: str = "bookings@storebox.local"
    APP_PUBLIC_URL: str = "http://localhost:3000"
    SUPPORT_URL: str | None = None

    # --- Reconciliation ----------------------------------------------------
    SCHEDULER_ENABLED: bool = SCHEDULER_ENABLED
    RECONCILE_INTERVAL_MINUTES: int = 5
    RECONCILE_GRACE_SECONDS: int = 120
    RECONCILE_MAX_ATTEMPTS: int = 5

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8"
    )

    @field_validator(
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_WEBHOOK_SECRET_NEXT",
        "SESSION_JWT_SECRET",
        "SENDGRID_API_KEY",
        "LOCK_CLIENT_SECRET",
    )
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @property
    def session_secret(self) -> str:
        return self.SESSION_JWT_SECRET or self.SECRET_KEY

    @property
    def stripe_live_mode(self) -> bool:
        """Whether the configured Stripe key targets live (not test) mode."""

        return bool(self.STRIPE_SECRET_KEY and self.STRIPE_SECRET_KEY.startswith("sk_live_"))

    @property
    def stripe_webhook_secrets(self) -> list[str]:
        return [s for s in (self.STRIPE_WEBHOOK_SECRET, self.STRIPE_WEBHOOK_SECRET_NEXT) if s]


class AppInfo(BaseModel):
    name: str = "storebox-backend"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "SCHEDULER_ENABLED",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
