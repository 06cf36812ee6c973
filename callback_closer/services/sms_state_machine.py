"""
SMS qualification script.

A lead moves forward through a fixed sequence of questions. Each inbound text
is parsed against the question for the current state; valid input advances,
invalid input re-prompts and leaves the state where it was. The machine is
pure: it returns a ``Transition`` and the caller persists it.
"""

import enum
import re
from dataclasses import dataclass, field
from typing import Optional

from callback_closer.db.models import Business, SmsConversationState
from callback_closer.models.ledger_schemas import LeadFieldUpdates

STATE_ORDER = [
    SmsConversationState.NOT_STARTED,
    SmsConversationState.AWAITING_SERVICE,
    SmsConversationState.AWAITING_URGENCY,
    SmsConversationState.AWAITING_ZIP,
    SmsConversationState.AWAITING_BEST_TIME,
    SmsConversationState.AWAITING_NAME,
    SmsConversationState.COMPLETED,
]

URGENCY_CHOICES = {
    "1": "Emergency",
    "emergency": "Emergency",
    "urgent": "Emergency",
    "2": "Today",
    "today": "Today",
    "asap": "Today",
    "3": "This week",
    "week": "This week",
    "this week": "This week",
    "next week": "This week",
    "4": "Quote",
    "quote": "Quote",
    "estimate": "Quote",
}

BEST_TIME_CHOICES = {
    "1": "Morning",
    "morning": "Morning",
    "am": "Morning",
    "2": "Afternoon",
    "afternoon": "Afternoon",
    "pm": "Afternoon",
    "3": "Evening",
    "evening": "Evening",
    "tonight": "Evening",
}

NAME_SKIP_WORDS = {"skip", "no", "n/a", "na"}

_US_ZIP = re.compile(r"^\d{5}(?:-\d{4})?$")
_POSTAL_CODE = re.compile(r"^[A-Za-z0-9\- ]{3,10}$")


class TransitionKind(enum.Enum):
    ADVANCED = "ADVANCED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"
    # Text received after completion; nothing changes
    ACKNOWLEDGED = "ACKNOWLEDGED"


@dataclass
class Transition:
    """Result of feeding one inbound text to the script."""
    kind: TransitionKind
    next_state: SmsConversationState
    reply_text: str
    field_updates: LeadFieldUpdates = field(default_factory=LeadFieldUpdates)
    mark_qualified: bool = False
    notify_owner: bool = False

    @property
    def valid(self) -> bool:
        return self.kind != TransitionKind.REJECTED

    @property
    def completed(self) -> bool:
        return self.kind == TransitionKind.COMPLETED


# Prompts

def service_prompt(business: Business) -> str:
    return (
        "Thanks for calling. What do you need help with? "
        f"Reply 1 for {business.service_label_1}, 2 for {business.service_label_2}, "
        f"3 for {business.service_label_3}, or reply with a short description."
    )


def urgency_prompt() -> str:
    return "How urgent is it? Reply 1 Emergency, 2 Today, 3 This week, 4 Quote."


def zip_prompt() -> str:
    return "What is the job ZIP code?"


def best_time_prompt() -> str:
    return "Best time for a callback? Reply morning, afternoon, or evening."


def name_prompt() -> str:
    return "Optional: what name should we ask for? Reply with your name or type skip."


def completion_message() -> str:
    return "Thanks - we have your details and will reach out shortly."


def already_completed_message() -> str:
    return "Thanks - we already have your request. We will follow up soon."


# Parsers

def parse_service(text: str, business: Business) -> Optional[str]:
    text = text.strip()
    if not text:
        return None
    labels = {
        "1": business.service_label_1,
        "2": business.service_label_2,
        "3": business.service_label_3,
    }
    return labels.get(text, text)


def parse_urgency(text: str) -> Optional[str]:
    return URGENCY_CHOICES.get(text.strip().lower())


def parse_zip_code(text: str) -> Optional[str]:
    text = text.strip()
    if not text:
        return None
    if _US_ZIP.match(text):
        return text
    if _POSTAL_CODE.match(text):
        return text.upper()
    return None


def parse_best_time(text: str) -> Optional[str]:
    return BEST_TIME_CHOICES.get(text.strip().lower())


def parse_contact_name(text: str) -> Optional[str]:
    text = text.strip()
    if not text or text.lower() in NAME_SKIP_WORDS:
        return None
    return text


def _rejected(state: SmsConversationState, reply_text: str) -> Transition:
    return Transition(kind=TransitionKind.REJECTED, next_state=state, reply_text=reply_text)


def advance_lead_conversation(state: SmsConversationState, inbound_text: Optional[str], business: Business) -> Transition:
    """
    Compute the next step of the script for one inbound text.

    Args:
        state: Current conversation state of the lead
        inbound_text: Body of the inbound SMS
        business: Tenant, for the service option labels

    Returns:
        Transition: what to store and what to reply. A rejected transition
        keeps ``next_state`` equal to ``state``.
    """
    text = (inbound_text or "").strip()

    if state == SmsConversationState.NOT_STARTED:
        return Transition(
            kind=TransitionKind.ADVANCED,
            next_state=SmsConversationState.AWAITING_SERVICE,
            reply_text=service_prompt(business),
        )

    if state == SmsConversationState.AWAITING_SERVICE:
        service = parse_service(text, business)
        if not service:
            return _rejected(
                state,
                f"Please reply 1, 2, or 3, or send a short service description. {service_prompt(business)}",
            )
        return Transition(
            kind=TransitionKind.ADVANCED,
            next_state=SmsConversationState.AWAITING_URGENCY,
            reply_text=urgency_prompt(),
            field_updates=LeadFieldUpdates(service_requested=service, service_selection_raw=text),
            mark_qualified=True,
        )

    if state == SmsConversationState.AWAITING_URGENCY:
        urgency = parse_urgency(text)
        if not urgency:
            return _rejected(state, f"Please reply 1, 2, 3, or 4 for urgency. {urgency_prompt()}")
        return Transition(
            kind=TransitionKind.ADVANCED,
            next_state=SmsConversationState.AWAITING_ZIP,
            reply_text=zip_prompt(),
            field_updates=LeadFieldUpdates(urgency=urgency),
        )

    if state == SmsConversationState.AWAITING_ZIP:
        zip_code = parse_zip_code(text)
        if not zip_code:
            return _rejected(state, "Please reply with a valid ZIP/postal code.")
        return Transition(
            kind=TransitionKind.ADVANCED,
            next_state=SmsConversationState.AWAITING_BEST_TIME,
            reply_text=best_time_prompt(),
            field_updates=LeadFieldUpdates(zip_code=zip_code),
            notify_owner=True,
        )

    if state == SmsConversationState.AWAITING_BEST_TIME:
        best_time = parse_best_time(text)
        if not best_time:
            return _rejected(state, "Please reply morning, afternoon, or evening.")
        return Transition(
            kind=TransitionKind.ADVANCED,
            next_state=SmsConversationState.AWAITING_NAME,
            reply_text=name_prompt(),
            field_updates=LeadFieldUpdates(best_time=best_time),
        )

    if state == SmsConversationState.AWAITING_NAME:
        return Transition(
            kind=TransitionKind.COMPLETED,
            next_state=SmsConversationState.COMPLETED,
            reply_text=completion_message(),
            field_updates=LeadFieldUpdates(contact_name=parse_contact_name(text)),
        )

    if state == SmsConversationState.COMPLETED:
        return Transition(
            kind=TransitionKind.ACKNOWLEDGED,
            next_state=SmsConversationState.COMPLETED,
            reply_text=already_completed_message(),
        )

    return _rejected(state, service_prompt(business))
