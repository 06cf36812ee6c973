"""
CRUD operations for database models.

Writes keyed by provider identifiers (call SID, message SID, lead call id,
consent phone) follow insert -> commit -> on IntegrityError rollback and re-read,
so concurrent deliveries of the same webhook converge on one row.
"""

import uuid
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from callback_closer.db.models import (
    Business, Call, Lead, Message, SmsConsent, SmsConversationState, SubscriptionStatus
)
from callback_closer.models.ledger_schemas import CallUpdate, LeadUpdate, apply_patch

logger = logging.getLogger(__name__)


# Business CRUD operations

def create_business(db: Session, business_data: Dict[str, Any]) -> Business:
    """
    Create a new business.

    Args:
        db: Database session
        business_data: Column values keyed by attribute name

    Returns:
        Created business
    """
    db_business = Business(**business_data)
    db.add(db_business)
    db.commit()
    db.refresh(db_business)
    logger.info(f"Created business: {db_business.id} ({db_business.name})")
    return db_business


def get_business(db: Session, business_id: uuid.UUID) -> Optional[Business]:
    return db.query(Business).filter(Business.id == business_id).first()


def get_business_by_twilio_number(db: Session, phone_normalized: str, phone_raw: Optional[str] = None) -> Optional[Business]:
    """
    Get the business that owns an inbound Twilio number.

    Args:
        db: Database session
        phone_normalized: Number in E.164 form
        phone_raw: Number as received, matched when stored unnormalized

    Returns:
        Business or None if the number is not assigned
    """
    candidates = [value for value in {phone_normalized, phone_raw} if value]
    if not candidates:
        return None
    return db.query(Business).filter(Business.twilio_phone_number.in_(candidates)).first()


def get_business_by_stripe_customer(db: Session, customer_id: str) -> Optional[Business]:
    return db.query(Business).filter(Business.stripe_customer_id == customer_id).first()


def update_business_billing(
    db: Session,
    business: Business,
    subscription_status: Optional[SubscriptionStatus] = None,
    **fields: Any,
) -> Business:
    """
    Update billing columns of a business.

    Args:
        db: Database session
        business: Business to update
        subscription_status: New status; also stamps ``subscription_status_updated_at``
        **fields: Other billing columns (stripe_customer_id, stripe_subscription_id, stripe_price_id)

    Returns:
        Updated business
    """
    for key, value in fields.items():
        setattr(business, key, value)
    if subscription_status is not None:
        business.subscription_status = subscription_status
        business.subscription_status_updated_at = datetime.utcnow()
    db.commit()
    db.refresh(business)
    logger.info(f"Updated billing for business {business.id}: status={business.subscription_status.value}")
    return business


# Call CRUD operations

def get_call_by_twilio_sid(db: Session, twilio_call_sid: str) -> Optional[Call]:
    """
    Get call by Twilio call SID.

    Args:
        db: Database session
        twilio_call_sid: Twilio call SID

    Returns:
        Call or None if not found
    """
    return db.query(Call).filter(Call.twilio_call_sid == twilio_call_sid).first()


def upsert_call(db: Session, twilio_call_sid: str, create: CallUpdate, update: CallUpdate) -> Call:
    """
    Insert or update a call keyed by its Twilio call SID.

    Args:
        db: Database session
        twilio_call_sid: Twilio call SID
        create: Values for a new row
        update: Values applied when the row already exists

    Returns:
        The single call row for this SID
    """
    db_call = get_call_by_twilio_sid(db, twilio_call_sid)
    if db_call is None:
        db_call = Call(twilio_call_sid=twilio_call_sid, **create.model_dump(exclude_unset=True))
        db.add(db_call)
        try:
            db.commit()
            db.refresh(db_call)
            logger.info(f"Created call record: {twilio_call_sid}")
            return db_call
        except IntegrityError:
            # Another delivery inserted it first
            db.rollback()
            db_call = get_call_by_twilio_sid(db, twilio_call_sid)
            if db_call is None:
                raise

    apply_patch(db_call, update)
    db.commit()
    db.refresh(db_call)
    logger.info(f"Updated call record: {twilio_call_sid}")
    return db_call


def update_call_recording(db: Session, twilio_call_sid: str, patch: CallUpdate) -> Optional[Call]:
    """
    Apply recording metadata to an existing call, whatever its status.

    Returns:
        Updated call or None if the call is unknown
    """
    db_call = get_call_by_twilio_sid(db, twilio_call_sid)
    if not db_call:
        return None

    apply_patch(db_call, patch)
    db.commit()
    db.refresh(db_call)
    logger.info(f"Updated recording for call {twilio_call_sid}: {db_call.recording_status}")
    return db_call


# Lead CRUD operations

def get_lead(db: Session, lead_id: uuid.UUID) -> Optional[Lead]:
    return db.query(Lead).filter(Lead.id == lead_id).first()


def get_lead_by_call_id(db: Session, call_id: uuid.UUID) -> Optional[Lead]:
    return db.query(Lead).filter(Lead.call_id == call_id).first()


def find_or_create_lead_for_call(
    db: Session,
    business_id: uuid.UUID,
    call_id: uuid.UUID,
    caller_phone: str,
    caller_phone_normalized: str,
) -> Tuple[Lead, bool]:
    """
    Get the lead for a call, creating it on first sight.

    Returns:
        (lead, created)
    """
    db_lead = get_lead_by_call_id(db, call_id)
    if db_lead:
        return db_lead, False

    db_lead = Lead(
        business_id=business_id,
        call_id=call_id,
        caller_phone=caller_phone or caller_phone_normalized,
        caller_phone_normalized=caller_phone_normalized,
    )
    db.add(db_lead)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        db_lead = get_lead_by_call_id(db, call_id)
        if db_lead is None:
            raise
        return db_lead, False

    db.refresh(db_lead)
    logger.info(f"Created lead {db_lead.id} for call {call_id}")
    return db_lead, True


def find_lead_for_caller(db: Session, business_id: uuid.UUID, caller_phone_normalized: str) -> Optional[Lead]:
    """
    Resolve which lead an inbound text belongs to.

    Prefers the most recent lead still in conversation, then the most recent
    lead of any state.
    """
    query = db.query(Lead).filter(
        Lead.business_id == business_id,
        Lead.caller_phone_normalized == caller_phone_normalized,
    )
    active = (
        query.filter(Lead.sms_state != SmsConversationState.COMPLETED)
        .order_by(Lead.created_at.desc())
        .first()
    )
    if active:
        return active
    return query.order_by(Lead.created_at.desc()).first()


def update_lead(db: Session, lead_id: uuid.UUID, patch: LeadUpdate) -> Optional[Lead]:
    """
    Apply a partial update to a lead in one commit.

    Args:
        db: Database session
        lead_id: Lead ID
        patch: Fields to write; unset fields are left alone

    Returns:
        Updated lead or None if not found
    """
    db_lead = get_lead(db, lead_id)
    if not db_lead:
        return None

    apply_patch(db_lead, patch)
    db.commit()
    db.refresh(db_lead)
    return db_lead


def claim_lead_sms_start(db: Session, lead_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
    """
    Atomically mark a lead's conversation as started.

    Only one caller can win: the update is conditional on ``sms_started_at IS NULL``.

    Returns:
        True if this call claimed the start
    """
    now = now or datetime.utcnow()
    claimed = (
        db.query(Lead)
        .filter(Lead.id == lead_id, Lead.sms_started_at.is_(None))
        .update(
            {
                Lead.sms_state: SmsConversationState.AWAITING_SERVICE,
                Lead.sms_started_at: now,
                Lead.last_interaction_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return claimed == 1


def release_lead_sms_start(db: Session, lead_id: uuid.UUID) -> None:
    """Undo ``claim_lead_sms_start`` after the opening text could not be sent."""
    db.query(Lead).filter(Lead.id == lead_id).update(
        {
            Lead.sms_state: SmsConversationState.NOT_STARTED,
            Lead.sms_started_at: None,
        },
        synchronize_session=False,
    )
    db.commit()
    logger.info(f"Released conversation start for lead {lead_id}")


def claim_owner_notification(db: Session, lead_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
    """Atomically set ``owner_notified_at`` if it is still empty."""
    claimed = (
        db.query(Lead)
        .filter(Lead.id == lead_id, Lead.owner_notified_at.is_(None))
        .update({Lead.owner_notified_at: now or datetime.utcnow()}, synchronize_session=False)
    )
    db.commit()
    return claimed == 1


def release_owner_notification(db: Session, lead_id: uuid.UUID) -> None:
    db.query(Lead).filter(Lead.id == lead_id).update(
        {Lead.owner_notified_at: None},
        synchronize_session=False,
    )
    db.commit()


def count_leads_started_between(db: Session, business_id: uuid.UUID, start: datetime, end: datetime) -> int:
    """Number of leads of a business whose conversation started in ``[start, end)``."""
    return (
        db.query(Lead)
        .filter(
            Lead.business_id == business_id,
            Lead.sms_started_at.isnot(None),
            Lead.sms_started_at >= start,
            Lead.sms_started_at < end,
        )
        .count()
    )


# Message CRUD operations

def get_message_by_twilio_sid(db: Session, twilio_sid: str) -> Optional[Message]:
    return db.query(Message).filter(Message.twilio_sid == twilio_sid).first()


def get_lead_messages(db: Session, lead_id: uuid.UUID) -> List[Message]:
    """Transcript of a lead in delivery order."""
    return db.query(Message).filter(Message.lead_id == lead_id).order_by(Message.created_at.asc()).all()


def create_message(db: Session, message_data: Dict[str, Any]) -> Message:
    """
    Insert one transcript entry.

    Raises:
        IntegrityError: If the Twilio SID already exists (session rolled back)
    """
    db_message = Message(**message_data)
    db.add(db_message)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(db_message)
    return db_message


# SMS consent CRUD operations

def get_sms_consent(db: Session, business_id: uuid.UUID, phone_normalized: str) -> Optional[SmsConsent]:
    return (
        db.query(SmsConsent)
        .filter(SmsConsent.business_id == business_id, SmsConsent.phone_normalized == phone_normalized)
        .first()
    )


def _apply_consent(
    consent: SmsConsent,
    opted_out: bool,
    keyword: Optional[str],
    message_sid: Optional[str],
    phone_raw: Optional[str],
    now: datetime,
) -> None:
    consent.opted_out = opted_out
    if opted_out:
        consent.opted_out_at = now
    else:
        consent.opted_in_at = now
    consent.last_keyword = keyword
    consent.last_message_sid = message_sid
    if phone_raw:
        consent.phone_raw_last_seen = phone_raw


def upsert_sms_consent(
    db: Session,
    business_id: uuid.UUID,
    phone_normalized: str,
    opted_out: bool,
    keyword: Optional[str] = None,
    message_sid: Optional[str] = None,
    phone_raw: Optional[str] = None,
) -> SmsConsent:
    """
    Record an opt-out or opt-in for (business, phone).

    Returns:
        The single consent row for this pair
    """
    now = datetime.utcnow()
    consent = get_sms_consent(db, business_id, phone_normalized)
    if consent is None:
        consent = SmsConsent(business_id=business_id, phone_normalized=phone_normalized)
        _apply_consent(consent, opted_out, keyword, message_sid, phone_raw, now)
        db.add(consent)
        try:
            db.commit()
            db.refresh(consent)
            return consent
        except IntegrityError:
            db.rollback()
            consent = get_sms_consent(db, business_id, phone_normalized)
            if consent is None:
                raise

    _apply_consent(consent, opted_out, keyword, message_sid, phone_raw, now)
    db.commit()
    db.refresh(consent)
    return consent


def advance_lead_state(
    db: Session,
    lead_id: uuid.UUID,
    expected_state: SmsConversationState,
    patch: LeadUpdate,
) -> Optional[Lead]:
    """
    Apply a conversation step only if the lead is still in ``expected_state``.

    Two texts processed concurrently for the same lead cannot both advance it.

    Returns:
        Updated lead, or None if the state changed underneath us
    """
    values = {getattr(Lead, key): value for key, value in patch.model_dump(exclude_unset=True).items()}
    updated = (
        db.query(Lead)
        .filter(Lead.id == lead_id, Lead.sms_state == expected_state)
        .update(values, synchronize_session=False)
    )
    db.commit()
    if updated != 1:
        return None
    return get_lead(db, lead_id)
