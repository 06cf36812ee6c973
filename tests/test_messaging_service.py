import uuid

import pytest

from callback_closer.db.models import Lead, Message, MessageDirection, MessageParticipant
from callback_closer.db.base_crud import upsert_sms_consent
from callback_closer.services.messaging_service import (
    OutboundSendError,
    build_owner_notification_message,
    persist_inbound_message,
    send_and_persist_outbound_message,
)

BUSINESS_NUMBER = "+15125550123"
CALLER_NUMBER = "+15125550142"


def test_inbound_message_is_deduplicated_by_sid(db_session, make_business):
    business = make_business()

    first = persist_inbound_message(db_session, business.id, None, "SM100", CALLER_NUMBER, BUSINESS_NUMBER, "1")
    second = persist_inbound_message(db_session, business.id, None, "SM100", CALLER_NUMBER, BUSINESS_NUMBER, "1")

    assert not first.duplicate
    assert second.duplicate
    assert second.message.id == first.message.id
    assert db_session.query(Message).count() == 1


def test_inbound_message_without_sid_always_inserts(db_session, make_business):
    business = make_business()

    persist_inbound_message(db_session, business.id, None, None, CALLER_NUMBER, BUSINESS_NUMBER, "hi")
    result = persist_inbound_message(db_session, business.id, None, "", CALLER_NUMBER, BUSINESS_NUMBER, "hi")

    assert not result.duplicate
    assert db_session.query(Message).count() == 2


def test_distinct_sids_with_identical_content_are_both_kept(db_session, make_business):
    business = make_business()

    first = persist_inbound_message(db_session, business.id, None, "SM200", CALLER_NUMBER, BUSINESS_NUMBER, "1")
    second = persist_inbound_message(db_session, business.id, None, "SM201", CALLER_NUMBER, BUSINESS_NUMBER, "1")

    assert not first.duplicate
    assert not second.duplicate
    assert first.message.id != second.message.id
    assert db_session.query(Message).count() == 2


def test_inbound_numbers_are_normalized(db_session, make_business):
    business = make_business()
    result = persist_inbound_message(
        db_session, business.id, None, "SM1", "(512) 555-0142", BUSINESS_NUMBER, "hello", {"Body": "hello"}
    )
    assert result.message.from_phone == CALLER_NUMBER
    assert result.message.direction == MessageDirection.INBOUND
    assert result.message.raw_payload == {"Body": "hello"}


def test_outbound_send_is_recorded(db_session, make_business, fake_twilio):
    business = make_business()

    result = send_and_persist_outbound_message(
        db_session, fake_twilio, business.id, None, BUSINESS_NUMBER, "(512) 555-0142", "Hello there"
    )

    assert not result.suppressed
    assert fake_twilio.sent == [{"from": BUSINESS_NUMBER, "to": CALLER_NUMBER, "body": "Hello there"}]
    assert result.message.twilio_sid == "SMOUT0001"
    assert result.message.status == "queued"
    assert result.message.direction == MessageDirection.OUTBOUND
    assert result.message.participant == MessageParticipant.LEAD
    assert result.message.twilio_created_at.tzinfo is None


def test_outbound_to_opted_out_recipient_is_suppressed(db_session, make_business, fake_twilio):
    business = make_business()
    upsert_sms_consent(db_session, business.id, CALLER_NUMBER, opted_out=True, keyword="STOP")

    result = send_and_persist_outbound_message(
        db_session, fake_twilio, business.id, None, BUSINESS_NUMBER, CALLER_NUMBER, "Hello there"
    )

    assert result.suppressed
    assert result.message is None
    assert fake_twilio.sent == []
    assert db_session.query(Message).count() == 0


def test_provider_failure_raises_outbound_send_error(db_session, make_business, fake_twilio):
    business = make_business()
    fake_twilio.fail = True

    with pytest.raises(OutboundSendError) as excinfo:
        send_and_persist_outbound_message(
            db_session, fake_twilio, business.id, None, BUSINESS_NUMBER, CALLER_NUMBER, "Hello there"
        )

    assert excinfo.value.to_phone == CALLER_NUMBER
    assert db_session.query(Message).count() == 0


def test_owner_notification_message():
    lead = Lead(
        id=uuid.UUID("00000000-0000-0000-0000-000000000001"),
        caller_phone_normalized=CALLER_NUMBER,
        service_requested="Leak repair",
        urgency="Today",
        zip_code="78704",
    )

    message = build_owner_notification_message("Acme Plumbing", lead)

    assert message == (
        "[CallbackCloser] Acme Plumbing missed-call lead | Caller: (512) 555-0142 | "
        "Service: Leak repair | Urgency: Today | ZIP: 78704 | Best time: Unknown | "
        "Lead: https://callbacks.example.com/app/leads/00000000-0000-0000-0000-000000000001"
    )
