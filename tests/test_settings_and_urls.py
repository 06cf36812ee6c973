import pytest

from callback_closer.config.settings import Settings, validate_settings
from callback_closer.core.urls import absolute_url, build_webhook_url, build_webhook_urls, redact_webhook_token

PRODUCTION_VALUES = {
    "environment": "production",
    "database_url": "postgresql://db/callbacks",
    "app_base_url": "https://callbacks.example.com/",
    "twilio_account_sid": "AC123",
    "twilio_auth_token": "auth",
    "twilio_webhook_auth_token": "token",
    "stripe_secret_key": "sk_test",
    "stripe_webhook_secret": "whsec",
    "stripe_price_starter": "price_starter",
    "stripe_price_pro": "price_pro",
}


def test_trailing_slash_is_stripped():
    assert Settings(app_base_url="https://callbacks.example.com//").app_base_url == "https://callbacks.example.com"


def test_production_settings_validate():
    validate_settings(Settings(**PRODUCTION_VALUES))


def test_production_requires_secrets():
    config = Settings(**dict(PRODUCTION_VALUES, stripe_webhook_secret="", twilio_auth_token=""))
    with pytest.raises(ValueError) as excinfo:
        validate_settings(config)
    assert "STRIPE_WEBHOOK_SECRET" in str(excinfo.value)
    assert "TWILIO_AUTH_TOKEN" in str(excinfo.value)


def test_production_requires_https_base_url():
    with pytest.raises(ValueError):
        validate_settings(Settings(**dict(PRODUCTION_VALUES, app_base_url="http://callbacks.example.com")))


def test_development_skips_validation():
    validate_settings(Settings(environment="development", twilio_auth_token=""))


def test_absolute_url():
    assert absolute_url("/app/leads/1") == "https://callbacks.example.com/app/leads/1"
    assert absolute_url("app/leads/1") == "https://callbacks.example.com/app/leads/1"
    assert absolute_url("http://elsewhere.example.com/x") == "http://elsewhere.example.com/x"


def test_webhook_url_carries_token():
    assert build_webhook_url("/api/v1/twilio/status") == (
        "https://callbacks.example.com/api/v1/twilio/status?webhook_token=test-token"
    )


def test_webhook_urls_require_https(test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "app_base_url", "http://localhost:8000")
    with pytest.raises(ValueError):
        build_webhook_urls()


def test_webhook_urls_and_redaction():
    urls = build_webhook_urls()
    assert urls.voice_url == "https://callbacks.example.com/api/v1/twilio/voice?webhook_token=test-token"
    assert urls.sms_url.endswith("/api/v1/twilio/sms?webhook_token=test-token")
    assert redact_webhook_token(urls.status_url) == (
        "https://callbacks.example.com/api/v1/twilio/status?webhook_token=REDACTED"
    )
