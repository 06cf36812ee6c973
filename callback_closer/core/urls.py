"""
Public URL helpers for links and provider callback URLs.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from callback_closer.config.settings import Settings, settings

TWILIO_VOICE_PATH = "/api/v1/twilio/voice"
TWILIO_SMS_PATH = "/api/v1/twilio/sms"
TWILIO_STATUS_PATH = "/api/v1/twilio/status"

WEBHOOK_TOKEN_PARAM = "webhook_token"


@dataclass
class WebhookUrls:
    app_base_url: str
    voice_url: str
    sms_url: str
    status_url: str


def absolute_url(path: str, config: Optional[Settings] = None) -> str:
    """Resolve ``path`` against ``APP_BASE_URL``; absolute URLs pass through."""
    config = config or settings
    if path.lower().startswith(("http://", "https://")):
        return path
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{config.app_base_url}{path}"


def with_query_param(url: str, name: str, value: str) -> str:
    """Set one query parameter on ``url``, replacing any existing value."""
    parts = urlsplit(url)
    query = [(key, val) for key, val in parse_qsl(parts.query, keep_blank_values=True) if key != name]
    query.append((name, value))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def build_webhook_url(path: str, config: Optional[Settings] = None) -> str:
    """Absolute callback URL carrying the shared webhook token when one is configured."""
    config = config or settings
    url = absolute_url(path, config)
    if config.twilio_webhook_auth_token:
        url = with_query_param(url, WEBHOOK_TOKEN_PARAM, config.twilio_webhook_auth_token)
    return url


def build_webhook_urls(config: Optional[Settings] = None) -> WebhookUrls:
    """
    Callback URLs to configure on a Twilio number.

    Raises:
        ValueError: If APP_BASE_URL is not https or no webhook token is set
    """
    config = config or settings
    parsed = urlsplit(config.app_base_url)
    if parsed.scheme != "https" or not parsed.netloc:
        raise ValueError("APP_BASE_URL must use https:// for Twilio webhooks")
    if not config.twilio_webhook_auth_token:
        raise ValueError("Missing TWILIO_WEBHOOK_AUTH_TOKEN")

    return WebhookUrls(
        app_base_url=config.app_base_url,
        voice_url=build_webhook_url(TWILIO_VOICE_PATH, config),
        sms_url=build_webhook_url(TWILIO_SMS_PATH, config),
        status_url=build_webhook_url(TWILIO_STATUS_PATH, config),
    )


def redact_webhook_token(url: str) -> str:
    if f"{WEBHOOK_TOKEN_PARAM}=" not in url:
        return url
    return with_query_param(url, WEBHOOK_TOKEN_PARAM, "REDACTED")
