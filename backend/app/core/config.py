"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development; with no provider
credentials set every channel runs in mock-delivery mode.

Usage:
    from backend.app.core.config import settings
    print(settings.REDIS_URL)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


def split_provider_list(raw: Optional[str]) -> List[str]:
    """Parse a comma-separated provider list ("sendgrid, mailgun") into names."""
    if not raw:
        return []
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


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
    APP_NAME: str = "Notification Dispatch Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    WORKERS: int = 1
    RELOAD: bool = True

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Redis (retry store) ──
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_SOCKET_TIMEOUT: float = 5.0

    # ── Retry policy ──
    RETRY_RETENTION_SECONDS: int = 300  # nominal retention window (5 min)
    RETRY_EXPIRY_GRACE_SECONDS: int = 60  # extra key TTL so cleanup observes every record
    RETRY_BAND_WIDTH_MINUTES: float = 1.0
    RETRY_FIRST_MARK_MINUTES: float = 2.0
    RETRY_SECOND_MARK_MINUTES: float = 4.0
    RETRY_CLEANUP_MARK_MINUTES: float = 5.0
    RETRY_POLL_INTERVAL_SECONDS: float = 10.0
    RETRY_SCHEDULER_ENABLED: bool = True

    # ── Delivery ──
    BACKEND_SEND_TIMEOUT_SECONDS: float = 15.0
    HTTP_CLIENT_TIMEOUT_SECONDS: float = 30.0

    # ── AWS (SES email, SNS sms) ──
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_REGION: str = "us-east-1"

    # ── Email providers ──
    EMAIL_PROVIDER: Optional[str] = None  # sendgrid | mailgun | postmark | smtp | gmail | ses
    EMAIL_FALLBACK_PROVIDERS: Optional[str] = None  # comma-separated
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM: str = "noreply@notification.service"
    GMAIL_FROM: Optional[str] = None
    GMAIL_APP_PASSWORD: Optional[str] = None
    SENDGRID_API_KEY: Optional[str] = None
    SENDGRID_FROM: Optional[str] = None
    MAILGUN_API_KEY: Optional[str] = None
    MAILGUN_DOMAIN: Optional[str] = None
    MAILGUN_FROM: Optional[str] = None
    POSTMARK_SERVER_TOKEN: Optional[str] = None
    POSTMARK_FROM: Optional[str] = None
    SES_FROM: Optional[str] = None

    # ── SMS providers ──
    SMS_PROVIDER: Optional[str] = None  # http | twilio | nexmo | africastalking | clickatell | sns
    SMS_FALLBACK_PROVIDERS: Optional[str] = None
    SMS_URL: Optional[str] = None
    SMS_API_KEY: Optional[str] = None
    SMS_PARTNER_ID: Optional[str] = None
    SMS_SHORTCODE: Optional[str] = None
    SMS_PASS_TYPE: str = "plain"
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_FROM_NUMBER: Optional[str] = None
    NEXMO_API_KEY: Optional[str] = None
    NEXMO_API_SECRET: Optional[str] = None
    NEXMO_FROM: Optional[str] = None
    AFRICASTALKING_API_KEY: Optional[str] = None
    AFRICASTALKING_USERNAME: Optional[str] = None
    AFRICASTALKING_URL: str = "https://api.africastalking.com/version1/messaging/bulk"
    CLICKATELL_API_KEY: Optional[str] = None
    SNS_SENDER_ID: Optional[str] = None

    # ── Push providers ──
    PUSH_PROVIDER: Optional[str] = None  # fcm | webhook
    PUSH_FALLBACK_PROVIDERS: Optional[str] = None
    FCM_SERVER_KEY: Optional[str] = None
    PUSH_WEBHOOK_URL: Optional[str] = None
    PUSH_WEBHOOK_TOKEN: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def email_fallbacks(self) -> List[str]:
        return split_provider_list(self.EMAIL_FALLBACK_PROVIDERS)

    @property
    def sms_fallbacks(self) -> List[str]:
        return split_provider_list(self.SMS_FALLBACK_PROVIDERS)

    @property
    def push_fallbacks(self) -> List[str]:
        return split_provider_list(self.PUSH_FALLBACK_PROVIDERS)


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
