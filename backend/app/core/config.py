"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class ConfigurationError(RuntimeError):
    """Raised when a required collaborator setting is missing.

    Configuration errors are fatal for the operation that needs the setting
    and are raised before any state is mutated.
    """


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Cryptrac Billing API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Database - REQUIRED
    DATABASE_URL: str

    # Redis - REQUIRED
    REDIS_URL: str

    # CORS
    CORS_ORIGINS: list[str] = []

    # Public origin used to build hosted payment URLs
    APP_ORIGIN: str = ""

    # Internal API key shared with the payment-link service and operators
    INTERNAL_API_KEY: str = ""

    # Payment-link creation service
    PAYMENT_LINKS_API_URL: str = ""
    PAYMENT_LINKS_TIMEOUT_SECONDS: float = 10.0

    # Payment processor (NOWPayments)
    PAYMENTS_API_URL: str = "https://api.nowpayments.io/v1"
    PAYMENTS_API_KEY: str = ""
    PAYMENTS_IPN_SECRET: str = ""
    PAYMENTS_API_TIMEOUT_SECONDS: float = 10.0
    PAYMENTS_ALLOW_UNSIGNED_WEBHOOKS: bool = False

    # Webhook rate limiting
    WEBHOOK_RATE_LIMIT: int = 100
    WEBHOOK_RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Notification dispatch (fire-and-forget)
    NOTIFICATIONS_URL: Optional[str] = None
    NOTIFICATIONS_TIMEOUT_SECONDS: float = 5.0

    # Billing defaults
    DEFAULT_MERCHANT_TIMEZONE: str = "UTC"
    SCHEDULER_LOOKAHEAD_DAYS: int = 31
    SCHEDULER_CONCURRENCY: int = 5
    SCHEDULER_INTERVAL_MINUTES: int = 60
    PAYMENT_POLL_INTERVAL_MINUTES: int = 5

    # Celery
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()


def require_setting(name: str) -> str:
    """Return a non-empty setting value or raise ConfigurationError.

    Args:
        name: Settings attribute name

    Returns:
        The configured value
    """
    value = getattr(settings, name, None)
    if not value:
        raise ConfigurationError(f"{name} is not configured")
    return value
