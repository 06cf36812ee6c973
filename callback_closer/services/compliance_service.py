"""
SMS compliance keyword handling (STOP / START / HELP).

Compliance commands take precedence over the qualification script: an opted-out
recipient never receives an automated text, and the keyword reply is the only
message a command produces.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from callback_closer.config.settings import settings
from callback_closer.db import base_crud
from callback_closer.services.phone_service import normalize_phone_number

logger = logging.getLogger(__name__)

STOP_KEYWORDS = frozenset({"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"})
START_KEYWORDS = frozenset({"START", "YES", "UNSTOP"})
HELP_KEYWORDS = frozenset({"HELP"})

COMMAND_STOP = "STOP"
COMMAND_START = "START"
COMMAND_HELP = "HELP"

STATE_OPTED_OUT = "opted_out"
STATE_OPTED_IN = "opted_in"
STATE_HELP_ONLY = "help_only"

_NON_ALNUM = re.compile(r"[^A-Z0-9]")


@dataclass
class ComplianceResult:
    """Outcome of compliance handling for one inbound text."""
    handled: bool
    command: Optional[str] = None
    reply_text: Optional[str] = None
    state_change: Optional[str] = None


# Signature: (db, business_id, phone_normalized, phone_raw, opted_out, keyword, message_sid)
ConsentWriter = Callable[..., object]


def extract_keyword(body: Optional[str]) -> str:
    """First whitespace-separated token, uppercased, letters and digits only."""
    tokens = (body or "").strip().split()
    if not tokens:
        return ""
    return _NON_ALNUM.sub("", tokens[0].upper())


def classify_compliance_keyword(body: Optional[str]) -> Optional[str]:
    """
    Map an inbound body to a compliance command.

    Returns:
        "STOP", "START", "HELP", or None when the text is not a command
    """
    keyword = extract_keyword(body)
    if keyword in STOP_KEYWORDS:
        return COMMAND_STOP
    if keyword in START_KEYWORDS:
        return COMMAND_START
    if keyword in HELP_KEYWORDS:
        return COMMAND_HELP
    return None


def compliance_reply_text(command: str, app_name: Optional[str] = None) -> str:
    app_name = app_name or settings.app_name
    if command == COMMAND_STOP:
        return f"{app_name}: You are unsubscribed and will no longer receive messages. Reply START to opt back in."
    if command == COMMAND_START:
        return f"{app_name}: You are opted back in. Reply HELP for help or STOP to opt out."
    return f"{app_name}: Missed-call follow-up texts for your service request. Reply STOP to opt out or START to opt back in."


def handle_inbound_compliance_command(
    db: Session,
    business_id,
    from_phone: str,
    body: Optional[str],
    message_sid: Optional[str] = None,
    write_consent: Optional[ConsentWriter] = None,
) -> ComplianceResult:
    """
    Detect and apply a compliance keyword.

    STOP and START write the consent record; HELP only replies.

    Args:
        db: Database session
        business_id: Tenant the text was sent to
        from_phone: Sender number as received
        body: Message body
        message_sid: Provider message SID recorded on the consent row
        write_consent: Consent persistence function, defaults to ``base_crud.upsert_sms_consent``

    Returns:
        ComplianceResult: ``handled=False`` when the body is not a command
    """
    command = classify_compliance_keyword(body)
    if command is None:
        return ComplianceResult(handled=False)

    write_consent = write_consent or base_crud.upsert_sms_consent
    phone_normalized = normalize_phone_number(from_phone)

    if command == COMMAND_STOP:
        write_consent(
            db,
            business_id=business_id,
            phone_normalized=phone_normalized,
            phone_raw=from_phone,
            opted_out=True,
            keyword=extract_keyword(body),
            message_sid=message_sid,
        )
        state_change = STATE_OPTED_OUT
    elif command == COMMAND_START:
        write_consent(
            db,
            business_id=business_id,
            phone_normalized=phone_normalized,
            phone_raw=from_phone,
            opted_out=False,
            keyword=extract_keyword(body),
            message_sid=message_sid,
        )
        state_change = STATE_OPTED_IN
    else:
        state_change = STATE_HELP_ONLY

    logger.info(f"Compliance command {command} from {phone_normalized} for business {business_id}")
    return ComplianceResult(
        handled=True,
        command=command,
        reply_text=compliance_reply_text(command),
        state_change=state_change,
    )


def is_recipient_opted_out(db: Session, business_id, phone: Optional[str]) -> bool:
    """True if the recipient has an active opt-out for this business."""
    phone_normalized = normalize_phone_number(phone)
    if not phone_normalized:
        return False
    consent = base_crud.get_sms_consent(db, business_id, phone_normalized)
    return bool(consent and consent.opted_out)
