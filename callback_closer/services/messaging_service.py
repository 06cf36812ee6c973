"""
SMS transcript persistence and outbound sending.

Inbound texts are deduplicated by Twilio message SID. Outbound texts go
through the consent gate before the provider is called and are recorded only
after Twilio accepted them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from twilio.base.exceptions import TwilioException

from callback_closer.core.urls import absolute_url
from callback_closer.db import base_crud
from callback_closer.db.models import Lead, Message, MessageDirection, MessageParticipant
from callback_closer.services.compliance_service import is_recipient_opted_out
from callback_closer.services.phone_service import format_phone_for_display, normalize_phone_number
from callback_closer.services.twilio_service import TwilioService

logger = logging.getLogger(__name__)


class OutboundSendError(Exception):
    """Twilio did not accept an outbound SMS."""

    def __init__(self, message: str, to_phone: Optional[str] = None):
        super().__init__(message)
        self.to_phone = to_phone


@dataclass
class InboundResult:
    message: Message
    duplicate: bool


@dataclass
class OutboundResult:
    message: Optional[Message]
    suppressed: bool = False


def _naive_utc(value: Any) -> Optional[datetime]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def persist_inbound_message(
    db: Session,
    business_id,
    lead_id,
    twilio_sid: Optional[str],
    from_phone: str,
    to_phone: str,
    body: str,
    raw_payload: Optional[Dict[str, Any]] = None,
) -> InboundResult:
    """
    Record an inbound text exactly once per Twilio message SID.

    Args:
        db: Database session
        business_id: Receiving business
        lead_id: Lead the text belongs to, if any
        twilio_sid: MessageSid; a missing SID always inserts
        from_phone: Sender number
        to_phone: Receiving Twilio number
        body: Message text
        raw_payload: Full webhook form for audit

    Returns:
        InboundResult: the stored message and whether it was already there
    """
    if twilio_sid:
        existing = base_crud.get_message_by_twilio_sid(db, twilio_sid)
        if existing:
            return InboundResult(message=existing, duplicate=True)

    message_data = {
        "business_id": business_id,
        "lead_id": lead_id,
        "twilio_sid": twilio_sid or None,
        "direction": MessageDirection.INBOUND,
        "participant": MessageParticipant.LEAD,
        "from_phone": normalize_phone_number(from_phone) or from_phone,
        "to_phone": normalize_phone_number(to_phone) or to_phone,
        "body": body or "",
        "raw_payload": raw_payload,
    }

    try:
        message = base_crud.create_message(db, message_data)
    except IntegrityError:
        if not twilio_sid:
            raise
        existing = base_crud.get_message_by_twilio_sid(db, twilio_sid)
        if existing is None:
            raise
        return InboundResult(message=existing, duplicate=True)

    return InboundResult(message=message, duplicate=False)


def record_outbound_message(
    db: Session,
    business_id,
    lead_id,
    from_phone: str,
    to_phone: str,
    body: str,
    participant: MessageParticipant = MessageParticipant.LEAD,
    twilio_sid: Optional[str] = None,
    status: Optional[str] = None,
    twilio_created_at: Optional[datetime] = None,
) -> Message:
    """Add an outbound entry to the transcript (inline TwiML replies have no SID)."""
    return base_crud.create_message(db, {
        "business_id": business_id,
        "lead_id": lead_id,
        "twilio_sid": twilio_sid,
        "direction": MessageDirection.OUTBOUND,
        "participant": participant,
        "from_phone": normalize_phone_number(from_phone) or from_phone,
        "to_phone": normalize_phone_number(to_phone) or to_phone,
        "body": body,
        "status": status,
        "twilio_created_at": twilio_created_at,
    })


def send_and_persist_outbound_message(
    db: Session,
    twilio: TwilioService,
    business_id,
    lead_id,
    from_phone: str,
    to_phone: str,
    body: str,
    participant: MessageParticipant = MessageParticipant.LEAD,
) -> OutboundResult:
    """
    Send an SMS through Twilio and record it.

    Recipients who opted out are skipped without calling Twilio.

    Returns:
        OutboundResult: ``suppressed=True`` when the consent gate blocked the send

    Raises:
        OutboundSendError: If Twilio rejected the message or is not configured
    """
    sender = normalize_phone_number(from_phone) or from_phone
    recipient = normalize_phone_number(to_phone) or to_phone

    if is_recipient_opted_out(db, business_id, recipient):
        logger.info(f"Suppressed outbound SMS to opted-out recipient {recipient} for business {business_id}")
        return OutboundResult(message=None, suppressed=True)

    try:
        sent = twilio.send_sms(sender, recipient, body)
    except (TwilioException, ValueError) as e:
        raise OutboundSendError(f"Failed to send SMS to {recipient}: {e}", to_phone=recipient) from e

    message = record_outbound_message(
        db,
        business_id=business_id,
        lead_id=lead_id,
        from_phone=sender,
        to_phone=recipient,
        body=body,
        participant=participant,
        twilio_sid=getattr(sent, "sid", None),
        status=getattr(sent, "status", None),
        twilio_created_at=_naive_utc(getattr(sent, "date_created", None)),
    )
    return OutboundResult(message=message, suppressed=False)


def build_owner_notification_message(business_name: str, lead: Lead) -> str:
    """One-line lead summary texted to the business owner."""
    parts = [
        f"[CallbackCloser] {business_name} missed-call lead",
        f"Caller: {format_phone_for_display(lead.caller_phone_normalized)}",
        f"Service: {lead.service_requested or 'Unknown'}",
        f"Urgency: {lead.urgency or 'Unknown'}",
        f"ZIP: {lead.zip_code or 'Unknown'}",
        f"Best time: {lead.best_time or 'Unknown'}",
        f"Lead: {absolute_url(f'/app/leads/{lead.id}')}",
    ]
    return " | ".join(parts)
