from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for the hotspot billing service.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Hotspot Billing"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False
    CORS_ORIGINS: list[str] = []

    # Database
    DATABASE_URL: Optional[str] = None  # Required in prod, optional in dev/test
    DB_SSL_MODE: str = "require"  # Options: disable, require, verify-ca, verify-full
    DB_SSL_CA_CERT_PATH: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2

    # Paystack (payment gateway)
    PAYSTACK_SECRET_KEY: Optional[str] = None
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_TIMEOUT_SECONDS: float = 30.0
    # Corroborate charge.success webhooks with transaction/verify before claiming.
    PAYSTACK_VERIFY_ON_WEBHOOK: bool = True
    PAYMENT_CHANNELS: list[str] = [
        "card",
        "bank",
        "ussd",
        "qr",
        "mobile_money",
        "bank_transfer",
    ]

    # RADIUS Manager (subscriber backend)
    RADIUS_API_URL: Optional[str] = None  # e.g. http://host/radiusmanager/api/sysapi.php
    RADIUS_API_USER: Optional[str] = None
    RADIUS_API_PASS: Optional[str] = None
    RADIUS_TIMEOUT_SECONDS: float = 20.0

    # Provisioning & commission
    DEFAULT_COMMISSION_RATE: float = Field(
        default=10.0, description="Bookkeeping rate (percent) when no owner is attributed"
    )
    DEFAULT_PLAN_DAYS: int = 30
    ACCOUNT_PLACEHOLDER_WINDOW_MINUTES: int = 60

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation orchestrator."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        if self.TESTING:
            return self

        self._validate_provisioning_config()
        self._validate_deployed_environment()
        return self

    def _validate_provisioning_config(self) -> None:
        if not 0 <= self.DEFAULT_COMMISSION_RATE <= 100:
            raise ValueError("DEFAULT_COMMISSION_RATE must be between 0 and 100.")
        if self.ACCOUNT_PLACEHOLDER_WINDOW_MINUTES <= 0:
            raise ValueError("ACCOUNT_PLACEHOLDER_WINDOW_MINUTES must be > 0.")
        if self.DEFAULT_PLAN_DAYS <= 0:
            raise ValueError("DEFAULT_PLAN_DAYS must be > 0.")
        if self.DB_SLOW_QUERY_THRESHOLD_SECONDS <= 0:
            raise ValueError("DB_SLOW_QUERY_THRESHOLD_SECONDS must be > 0.")

    def _validate_deployed_environment(self) -> None:
        """Staging/production must be wired to real collaborators."""
        if self.ENVIRONMENT not in {ENV_PRODUCTION, ENV_STAGING}:
            return

        required = {
            "DATABASE_URL": self.DATABASE_URL,
            "PAYSTACK_SECRET_KEY": self.PAYSTACK_SECRET_KEY,
            "RADIUS_API_URL": self.RADIUS_API_URL,
            "RADIUS_API_USER": self.RADIUS_API_USER,
            "RADIUS_API_PASS": self.RADIUS_API_PASS,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ValueError(
                f"Missing required configuration for {self.ENVIRONMENT}: {', '.join(missing)}"
            )

        if self.is_production:
            if self.PAYSTACK_SECRET_KEY and self.PAYSTACK_SECRET_KEY.startswith("sk_test"):
                raise ValueError(
                    "PAYSTACK_SECRET_KEY must be a live key (sk_live_...) in production."
                )
            if self.DB_SSL_MODE not in ["require", "verify-ca", "verify-full"]:
                raise ValueError(
                    f"SECURITY ERROR: DB_SSL_MODE must be secure in production (current: {self.DB_SSL_MODE})."
                )

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
