import pytest

from callback_closer.services.compliance_service import (
    classify_compliance_keyword,
    handle_inbound_compliance_command,
    is_recipient_opted_out,
)

CALLER_NUMBER = "+15125550142"


@pytest.mark.parametrize(
    "body, command",
    [
        ("STOP", "STOP"),
        ("stop please", "STOP"),
        ("Stop.", "STOP"),
        ("unsubscribe", "STOP"),
        ("QUIT", "STOP"),
        ("start", "START"),
        ("Yes", "START"),
        ("unstop", "START"),
        ("help!", "HELP"),
        ("hello", None),
        ("please stop", None),
        ("", None),
        (None, None),
    ],
)
def test_keyword_classification(body, command):
    assert classify_compliance_keyword(body) == command


def test_stop_writes_opt_out_with_injected_writer():
    calls = []

    result = handle_inbound_compliance_command(
        None,
        business_id="biz-1",
        from_phone="(512) 555-0142",
        body="STOP",
        message_sid="SM1",
        write_consent=lambda db, **kwargs: calls.append(kwargs),
    )

    assert result.handled
    assert result.command == "STOP"
    assert result.state_change == "opted_out"
    assert result.reply_text == (
        "CallbackCloser: You are unsubscribed and will no longer receive messages. Reply START to opt back in."
    )
    assert calls == [{
        "business_id": "biz-1",
        "phone_normalized": "+15125550142",
        "phone_raw": "(512) 555-0142",
        "opted_out": True,
        "keyword": "STOP",
        "message_sid": "SM1",
    }]


def test_help_replies_without_writing():
    calls = []
    result = handle_inbound_compliance_command(
        None, "biz-1", CALLER_NUMBER, "help", write_consent=lambda db, **kwargs: calls.append(kwargs)
    )
    assert result.command == "HELP"
    assert result.state_change == "help_only"
    assert "Reply STOP to opt out" in result.reply_text
    assert calls == []


def test_non_command_is_not_handled():
    result = handle_inbound_compliance_command(None, "biz-1", CALLER_NUMBER, "1")
    assert not result.handled
    assert result.reply_text is None


def test_stop_then_start_round_trip(db_session, make_business):
    business = make_business()

    handle_inbound_compliance_command(db_session, business.id, CALLER_NUMBER, "STOP", "SM1")
    assert is_recipient_opted_out(db_session, business.id, CALLER_NUMBER)
    assert is_recipient_opted_out(db_session, business.id, "(512) 555-0142")

    result = handle_inbound_compliance_command(db_session, business.id, CALLER_NUMBER, "START", "SM2")
    assert result.state_change == "opted_in"
    assert not is_recipient_opted_out(db_session, business.id, CALLER_NUMBER)


def test_opt_out_is_scoped_to_business(db_session, make_business):
    first = make_business()
    second = make_business(name="Other", twilio_phone_number="+15125550124")

    handle_inbound_compliance_command(db_session, first.id, CALLER_NUMBER, "STOP")

    assert is_recipient_opted_out(db_session, first.id, CALLER_NUMBER)
    assert not is_recipient_opted_out(db_session, second.id, CALLER_NUMBER)
