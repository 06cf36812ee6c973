import os
from datetime import datetime, timezone
from types import SimpleNamespace

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from twilio.base.exceptions import TwilioException

from callback_closer.config.settings import settings
from callback_closer.core.app import app
from callback_closer.db import models  # noqa: F401
from callback_closer.db.database import Base, enable_sqlite_transactions, get_db
from callback_closer.db.base_crud import create_business
from callback_closer.db.models import SubscriptionStatus
from callback_closer.services.twilio_service import get_twilio_service

WEBHOOK_TOKEN = "test-token"
BUSINESS_NUMBER = "+15125550123"
FORWARDING_NUMBER = "+15125550100"
OWNER_NUMBER = "+15125550199"
CALLER_NUMBER = "+15125550142"


class FakeTwilioService:
    """Records outbound SMS instead of calling Twilio."""

    def __init__(self):
        self.sent = []
        self.fail = False
        self.synced = []

    def send_sms(self, from_phone, to_phone, body):
        if self.fail:
            raise TwilioException("simulated send failure")
        self.sent.append({"from": from_phone, "to": to_phone, "body": body})
        return SimpleNamespace(
            sid=f"SMOUT{len(self.sent):04d}",
            status="queued",
            date_created=datetime.now(timezone.utc),
        )

    def sent_to(self, phone):
        return [message for message in self.sent if message["to"] == phone]


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    monkeypatch.setattr(settings, "environment", "test")
    monkeypatch.setattr(settings, "app_base_url", "https://callbacks.example.com")
    monkeypatch.setattr(settings, "webhook_base_url", None)
    monkeypatch.setattr(settings, "twilio_webhook_auth_token", WEBHOOK_TOKEN)
    monkeypatch.setattr(settings, "twilio_auth_token", "twilio-auth-token")
    monkeypatch.setattr(settings, "twilio_validate_signature", False)
    monkeypatch.setattr(settings, "twilio_record_calls", False)
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
    monkeypatch.setattr(settings, "stripe_price_starter", "price_starter")
    monkeypatch.setattr(settings, "stripe_price_pro", "price_pro")
    monkeypatch.setattr(settings, "billing_time_zone", "America/New_York")
    return settings


@pytest.fixture
def db_session():
    engine = enable_sqlite_transactions(
        create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def fake_twilio():
    return FakeTwilioService()


@pytest.fixture
def client(db_session, fake_twilio):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_twilio_service] = lambda: fake_twilio
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_business(db_session):
    def _make_business(**overrides):
        values = {
            "name": "Acme Plumbing",
            "forwarding_number": FORWARDING_NUMBER,
            "notify_phone": OWNER_NUMBER,
            "missed_call_seconds": 20,
            "timezone": "America/Chicago",
            "service_label_1": "Leak repair",
            "service_label_2": "Water heater",
            "service_label_3": "Drain cleaning",
            "twilio_phone_number": BUSINESS_NUMBER,
            "subscription_status": SubscriptionStatus.ACTIVE,
            "stripe_price_id": "price_starter",
        }
        values.update(overrides)
        return create_business(db_session, values)

    return _make_business


@pytest.fixture
def post_webhook(client):
    def _post(path, data, token=WEBHOOK_TOKEN):
        headers = {"x-callbackcloser-webhook-token": token} if token else {}
        return client.post(path, data=data, headers=headers)

    return _post
