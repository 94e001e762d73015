"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


# Stripe keys shorter than this, or containing the placeholder text, run the demo gateway
_MIN_STRIPE_KEY_LENGTH = 20
_PLACEHOLDER_MARKER = "your_stripe"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Marketplace Fulfillment API"
    api_version: str = "0.1.0"
    api_description: str = "Orders, coupons, licenses, downloads and refunds"

    # Authentication - bearer tokens are issued by the account service, verified here
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "marketplace-fulfillment"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    default_currency: str = "USD"

    # Pricing
    platform_fee_percent_goods: int = 30
    platform_fee_percent_services: int = 20

    # Delivery
    download_token_expires_minutes: int = 60
    content_root: str = "./uploads/templates"

    # License tier caps (access / download)
    license_personal_max_access: int = 10
    license_personal_max_downloads: int = 10
    license_commercial_max_access: int = 25
    license_commercial_max_downloads: int = 25
    license_extended_max_access: int = 100
    license_extended_max_downloads: int = 100

    # Order and refund windows
    refund_window_days: int = 14
    pending_order_ttl_hours: int = 24

    # Notifications - empty means log-only delivery
    notification_webhook_url: str = ""
    notification_timeout_seconds: float = 5.0
    outbox_batch_size: int = 100

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not 0 <= self.platform_fee_percent_goods <= 100:
            errors.append("PLATFORM_FEE_PERCENT_GOODS must be between 0 and 100")
        if not 0 <= self.platform_fee_percent_services <= 100:
            errors.append("PLATFORM_FEE_PERCENT_SERVICES must be between 0 and 100")
        if self.download_token_expires_minutes <= 0:
            errors.append("DOWNLOAD_TOKEN_EXPIRES_MINUTES must be positive")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def demo_mode(self) -> bool:
        """True when no usable Stripe key is configured - payments settle synchronously."""
        key = self.stripe_api_key
        return not key or _PLACEHOLDER_MARKER in key or len(key) < _MIN_STRIPE_KEY_LENGTH


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
