import pytest

from callback_closer.db.models import Business, SmsConversationState
from callback_closer.services.sms_state_machine import (
    STATE_ORDER,
    TransitionKind,
    advance_lead_conversation,
    parse_zip_code,
    service_prompt,
)


@pytest.fixture
def business():
    return Business(
        name="Acme Plumbing",
        service_label_1="Leak repair",
        service_label_2="Water heater",
        service_label_3="Drain cleaning",
    )


def test_full_script_collects_every_field(business):
    state = SmsConversationState.NOT_STARTED
    collected = {}
    kinds = []
    notify = []
    for text in ["", "1", "2", "78704", "afternoon", "Pat"]:
        transition = advance_lead_conversation(state, text, business)
        kinds.append(transition.kind)
        notify.append(transition.notify_owner)
        collected.update(transition.field_updates.model_dump(exclude_unset=True))
        state = transition.next_state

    assert state == SmsConversationState.COMPLETED
    assert kinds[-1] == TransitionKind.COMPLETED
    assert notify == [False, False, False, True, False, False]
    assert collected == {
        "service_requested": "Leak repair",
        "service_selection_raw": "1",
        "urgency": "Today",
        "zip_code": "78704",
        "best_time": "Afternoon",
        "contact_name": "Pat",
    }


def test_not_started_sends_service_prompt(business):
    transition = advance_lead_conversation(SmsConversationState.NOT_STARTED, "hi", business)
    assert transition.next_state == SmsConversationState.AWAITING_SERVICE
    assert transition.reply_text == service_prompt(business)
    assert "Reply 1 for Leak repair, 2 for Water heater, 3 for Drain cleaning" in transition.reply_text


def test_free_text_service_is_kept_and_qualifies(business):
    transition = advance_lead_conversation(SmsConversationState.AWAITING_SERVICE, "  burst pipe  ", business)
    assert transition.kind == TransitionKind.ADVANCED
    assert transition.mark_qualified
    assert transition.field_updates.service_requested == "burst pipe"


def test_empty_service_is_rejected(business):
    transition = advance_lead_conversation(SmsConversationState.AWAITING_SERVICE, "   ", business)
    assert transition.kind == TransitionKind.REJECTED
    assert not transition.valid
    assert transition.next_state == SmsConversationState.AWAITING_SERVICE
    assert transition.reply_text.startswith("Please reply 1, 2, or 3")
    assert transition.field_updates.model_dump(exclude_unset=True) == {}


@pytest.mark.parametrize(
    "text, expected",
    [
        ("1", "Emergency"),
        ("URGENT", "Emergency"),
        ("asap", "Today"),
        ("this week", "This week"),
        ("next week", "This week"),
        ("estimate", "Quote"),
    ],
)
def test_urgency_choices(business, text, expected):
    transition = advance_lead_conversation(SmsConversationState.AWAITING_URGENCY, text, business)
    assert transition.field_updates.urgency == expected
    assert transition.next_state == SmsConversationState.AWAITING_ZIP


def test_unknown_urgency_reprompts(business):
    transition = advance_lead_conversation(SmsConversationState.AWAITING_URGENCY, "whenever", business)
    assert transition.kind == TransitionKind.REJECTED
    assert transition.reply_text == (
        "Please reply 1, 2, 3, or 4 for urgency. "
        "How urgent is it? Reply 1 Emergency, 2 Today, 3 This week, 4 Quote."
    )


def test_zip_code_parsing():
    assert parse_zip_code("78704") == "78704"
    assert parse_zip_code("78704-1234") == "78704-1234"
    assert parse_zip_code("k1a 0b1") == "K1A 0B1"
    assert parse_zip_code("!!") is None
    assert parse_zip_code("") is None


def test_best_time_rejection_keeps_state(business):
    transition = advance_lead_conversation(SmsConversationState.AWAITING_BEST_TIME, "midnight", business)
    assert transition.next_state == SmsConversationState.AWAITING_BEST_TIME
    assert transition.reply_text == "Please reply morning, afternoon, or evening."


@pytest.mark.parametrize("text", ["skip", "SKIP", "no", "n/a", "na", ""])
def test_name_can_be_skipped(business, text):
    transition = advance_lead_conversation(SmsConversationState.AWAITING_NAME, text, business)
    assert transition.kind == TransitionKind.COMPLETED
    assert transition.field_updates.model_dump(exclude_unset=True) == {"contact_name": None}


def test_completed_conversation_is_acknowledged(business):
    transition = advance_lead_conversation(SmsConversationState.COMPLETED, "hello?", business)
    assert transition.kind == TransitionKind.ACKNOWLEDGED
    assert transition.next_state == SmsConversationState.COMPLETED
    assert "already have your request" in transition.reply_text
    assert transition.field_updates.model_dump(exclude_unset=True) == {}


def test_unknown_state_reprompts_service(business):
    transition = advance_lead_conversation("BOGUS", "1", business)
    assert transition.kind == TransitionKind.REJECTED
    assert transition.next_state == "BOGUS"
    assert transition.reply_text == service_prompt(business)


def test_state_never_moves_backwards(business):
    inputs = ["", "x", "1", "nope", "2", "??", "78704", "noon", "pm", "skip", "again"]
    state = SmsConversationState.NOT_STARTED
    position = STATE_ORDER.index(state)
    for text in inputs:
        transition = advance_lead_conversation(state, text, business)
        new_position = STATE_ORDER.index(transition.next_state)
        assert new_position >= position
        if not transition.valid:
            assert transition.next_state == state
        state, position = transition.next_state, new_position
    assert state == SmsConversationState.COMPLETED
