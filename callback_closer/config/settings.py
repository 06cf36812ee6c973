"""
Configuration settings for the CallbackCloser webhook service.
Centralizes all environment variables and configuration constants.
"""

import re
from typing import Optional
from urllib.parse import urlparse

from pydantic import validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "CallbackCloser"
    environment: str = "development"  # development, test, production
    app_base_url: str = "http://localhost:8000"
    # Public base URL Twilio signs against when running behind a proxy
    webhook_base_url: Optional[str] = None
    port: int = 8000

    # Twilio Configuration
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_webhook_auth_token: str = ""
    twilio_validate_signature: bool = False
    twilio_record_calls: bool = False

    # Stripe Configuration
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_starter: str = ""
    stripe_price_pro: str = ""

    # Usage and phone handling
    billing_time_zone: str = "America/New_York"
    default_phone_region: str = "US"

    # Database Configuration
    database_url: str = "sqlite:///./callback_closer.db"
    sql_echo: bool = False

    log_level: str = "INFO"

    @validator('app_base_url', 'webhook_base_url')
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        """Strip whitespace and trailing slashes from base URLs."""
        if v is None:
            return v
        return re.sub(r'/+$', '', v.strip())

    @validator('twilio_auth_token', 'twilio_webhook_auth_token', 'stripe_price_starter', 'stripe_price_pro')
    def strip_secret(cls, v: str) -> str:
        return (v or "").strip()

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()


PRODUCTION_REQUIRED_VARS = [
    'database_url',
    'app_base_url',
    'twilio_account_sid',
    'twilio_auth_token',
    'twilio_webhook_auth_token',
    'stripe_secret_key',
    'stripe_webhook_secret',
    'stripe_price_starter',
    'stripe_price_pro',
]


def validate_settings(config: Optional[Settings] = None):
    """
    Validate that all required settings are present.

    Only enforced in production; development runs with whatever is configured.
    """
    config = config or settings
    if not config.is_production:
        return

    missing_vars = []
    for var in PRODUCTION_REQUIRED_VARS:
        if not getattr(config, var):
            missing_vars.append(var.upper())

    if missing_vars:
        raise ValueError(
            f'Missing required environment variables for production: {", ".join(missing_vars)}. '
            'Please set them in the environment or the .env file.'
        )

    parsed = urlparse(config.app_base_url)
    if parsed.scheme != "https" or not parsed.netloc:
        raise ValueError('APP_BASE_URL must be an absolute https:// URL in production')
