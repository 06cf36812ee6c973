"""
SQLAlchemy models for database tables.

All timestamps are naive UTC, written with ``datetime.utcnow``.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, JSON, Boolean, Text, Integer, ForeignKey, Enum, UniqueConstraint, Index, Uuid
from sqlalchemy.orm import relationship
import enum

from callback_closer.db.database import Base


class SubscriptionStatus(enum.Enum):
    """Subscription status mirrored from the billing provider."""
    INACTIVE = "INACTIVE"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"


class CallStatus(enum.Enum):
    """Call outcome as seen by this service."""
    RECEIVED = "RECEIVED"
    ANSWERED = "ANSWERED"
    MISSED = "MISSED"
    COMPLETED = "COMPLETED"


class LeadStatus(enum.Enum):
    """Lead pipeline status."""
    NEW = "NEW"
    QUALIFIED = "QUALIFIED"
    CONTACTED = "CONTACTED"
    BOOKED = "BOOKED"


class SmsConversationState(enum.Enum):
    """Position of a lead in the SMS qualification script, in forward order."""
    NOT_STARTED = "NOT_STARTED"
    AWAITING_SERVICE = "AWAITING_SERVICE"
    AWAITING_URGENCY = "AWAITING_URGENCY"
    AWAITING_ZIP = "AWAITING_ZIP"
    AWAITING_BEST_TIME = "AWAITING_BEST_TIME"
    AWAITING_NAME = "AWAITING_NAME"
    COMPLETED = "COMPLETED"


class MessageDirection(enum.Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class MessageParticipant(enum.Enum):
    LEAD = "LEAD"
    OWNER = "OWNER"


class Business(Base):
    """Model for businesses (tenants) using missed-call follow-up."""

    __tablename__ = "businesses"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(120), nullable=False)

    # Call handling
    forwarding_number = Column(String(30), nullable=False)
    notify_phone = Column(String(30), nullable=True)
    missed_call_seconds = Column(Integer, nullable=False, default=20)
    timezone = Column(String(100), nullable=False, default="America/New_York")

    # Service options offered in the first SMS prompt
    service_label_1 = Column(String(40), nullable=False)
    service_label_2 = Column(String(40), nullable=False)
    service_label_3 = Column(String(40), nullable=False)

    # Twilio number assigned to this business (at most one)
    twilio_phone_number = Column(String(30), nullable=True, unique=True, index=True)

    # Billing
    stripe_customer_id = Column(String(255), nullable=True, unique=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True)
    stripe_price_id = Column(String(255), nullable=True)
    subscription_status = Column(Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.INACTIVE)
    subscription_status_updated_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    calls = relationship("Call", back_populates="business")
    leads = relationship("Lead", back_populates="business")
    messages = relationship("Message", back_populates="business")
    sms_consents = relationship("SmsConsent", back_populates="business")

    def __repr__(self):
        return f"<Business(id='{self.id}', name='{self.name}', twilio_phone_number='{self.twilio_phone_number}')>"


class Call(Base):
    """Model for call records, one per Twilio call SID."""

    __tablename__ = "calls"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Unconfigured numbers still get a call shell without a business
    business_id = Column(Uuid(as_uuid=True), ForeignKey("businesses.id"), nullable=True, index=True)

    # Twilio call information
    twilio_call_sid = Column(String(64), nullable=False, unique=True, index=True)
    parent_call_sid = Column(String(64), nullable=True)
    dial_call_sid = Column(String(64), nullable=True)

    # Call details
    from_phone = Column(String(30), nullable=True)
    from_phone_normalized = Column(String(30), nullable=True, index=True)
    to_phone = Column(String(30), nullable=True)
    to_phone_normalized = Column(String(30), nullable=True)
    status = Column(Enum(CallStatus), nullable=False, default=CallStatus.RECEIVED)
    dial_call_status = Column(String(32), nullable=True)
    answered = Column(Boolean, nullable=False, default=False)
    missed = Column(Boolean, nullable=False, default=False)
    call_duration_seconds = Column(Integer, nullable=True)
    dial_call_duration_seconds = Column(Integer, nullable=True)

    # Recording metadata (arrives asynchronously)
    recording_sid = Column(String(64), nullable=True)
    recording_url = Column(String(500), nullable=True)
    recording_status = Column(String(32), nullable=True)
    recording_duration_seconds = Column(Integer, nullable=True)

    raw_payload = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    business = relationship("Business", back_populates="calls")
    lead = relationship("Lead", back_populates="call", uselist=False)

    def __repr__(self):
        return f"<Call(id='{self.id}', twilio_call_sid='{self.twilio_call_sid}', status='{self.status.value if self.status else None}')>"


class Lead(Base):
    """Model for leads: one SMS qualification thread per missed call."""

    __tablename__ = "leads"
    __table_args__ = (
        Index("ix_leads_business_caller", "business_id", "caller_phone_normalized"),
        Index("ix_leads_business_sms_started", "business_id", "sms_started_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(Uuid(as_uuid=True), ForeignKey("businesses.id"), nullable=False)
    call_id = Column(Uuid(as_uuid=True), ForeignKey("calls.id"), nullable=True, unique=True)

    caller_phone = Column(String(30), nullable=False)
    caller_phone_normalized = Column(String(30), nullable=False)

    # Captured fields, filled in as the script advances
    service_requested = Column(String(255), nullable=True)
    service_selection_raw = Column(Text, nullable=True)
    urgency = Column(String(32), nullable=True)
    zip_code = Column(String(16), nullable=True)
    best_time = Column(String(32), nullable=True)
    contact_name = Column(String(255), nullable=True)

    sms_state = Column(Enum(SmsConversationState), nullable=False, default=SmsConversationState.NOT_STARTED)
    status = Column(Enum(LeadStatus), nullable=False, default=LeadStatus.NEW)
    billing_required = Column(Boolean, nullable=False, default=False)

    # Conversation bookkeeping
    sms_started_at = Column(DateTime, nullable=True)
    sms_completed_at = Column(DateTime, nullable=True)
    last_inbound_at = Column(DateTime, nullable=True)
    last_outbound_at = Column(DateTime, nullable=True)
    last_interaction_at = Column(DateTime, nullable=True)
    owner_notified_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    business = relationship("Business", back_populates="leads")
    call = relationship("Call", back_populates="lead")
    messages = relationship("Message", back_populates="lead", order_by="Message.created_at")

    def __repr__(self):
        return f"<Lead(id='{self.id}', sms_state='{self.sms_state.value if self.sms_state else None}')>"


class Message(Base):
    """Model for SMS transcript entries. Rows are never updated."""

    __tablename__ = "messages"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(Uuid(as_uuid=True), ForeignKey("businesses.id"), nullable=False, index=True)
    lead_id = Column(Uuid(as_uuid=True), ForeignKey("leads.id"), nullable=True, index=True)

    # Twilio message SID is the dedup key for inbound deliveries
    twilio_sid = Column(String(64), nullable=True, unique=True, index=True)

    direction = Column(Enum(MessageDirection), nullable=False)
    participant = Column(Enum(MessageParticipant), nullable=False, default=MessageParticipant.LEAD)
    from_phone = Column(String(30), nullable=False)
    to_phone = Column(String(30), nullable=False)
    body = Column(Text, nullable=False, default="")
    status = Column(String(32), nullable=True)
    twilio_created_at = Column(DateTime, nullable=True)
    raw_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    business = relationship("Business", back_populates="messages")
    lead = relationship("Lead", back_populates="messages")

    def __repr__(self):
        return f"<Message(id='{self.id}', twilio_sid='{self.twilio_sid}', direction='{self.direction.value if self.direction else None}')>"


class SmsConsent(Base):
    """Opt-out state per business and normalized phone number."""

    __tablename__ = "sms_consents"
    __table_args__ = (
        UniqueConstraint("business_id", "phone_normalized", name="uq_sms_consents_business_phone"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(Uuid(as_uuid=True), ForeignKey("businesses.id"), nullable=False)
    phone_normalized = Column(String(30), nullable=False)
    phone_raw_last_seen = Column(String(30), nullable=True)

    opted_out = Column(Boolean, nullable=False, default=False)
    opted_out_at = Column(DateTime, nullable=True)
    opted_in_at = Column(DateTime, nullable=True)
    last_keyword = Column(String(16), nullable=True)
    last_message_sid = Column(String(64), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    business = relationship("Business", back_populates="sms_consents")

    def __repr__(self):
        return f"<SmsConsent(business_id='{self.business_id}', phone='{self.phone_normalized}', opted_out={self.opted_out})>"
