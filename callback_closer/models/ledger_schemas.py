"""
Pydantic patch schemas for ledger updates.

Only fields that were explicitly set are written: build the patch with the
fields you mean to change and apply it with ``model_dump(exclude_unset=True)``.
An explicit ``None`` clears a column; an omitted field leaves it alone.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel

from callback_closer.db.models import CallStatus, LeadStatus, SmsConversationState


class CallUpdate(BaseModel):
    """Partial update for a call record."""
    business_id: Optional[Any] = None
    parent_call_sid: Optional[str] = None
    dial_call_sid: Optional[str] = None
    from_phone: Optional[str] = None
    from_phone_normalized: Optional[str] = None
    to_phone: Optional[str] = None
    to_phone_normalized: Optional[str] = None
    status: Optional[CallStatus] = None
    dial_call_status: Optional[str] = None
    answered: Optional[bool] = None
    missed: Optional[bool] = None
    call_duration_seconds: Optional[int] = None
    dial_call_duration_seconds: Optional[int] = None
    recording_sid: Optional[str] = None
    recording_url: Optional[str] = None
    recording_status: Optional[str] = None
    recording_duration_seconds: Optional[int] = None
    raw_payload: Optional[Dict[str, Any]] = None


class LeadFieldUpdates(BaseModel):
    """Captured qualification fields produced by the SMS script."""
    service_requested: Optional[str] = None
    service_selection_raw: Optional[str] = None
    urgency: Optional[str] = None
    zip_code: Optional[str] = None
    best_time: Optional[str] = None
    contact_name: Optional[str] = None


class LeadUpdate(LeadFieldUpdates):
    """Partial update for a lead record."""
    sms_state: Optional[SmsConversationState] = None
    status: Optional[LeadStatus] = None
    billing_required: Optional[bool] = None
    sms_started_at: Optional[datetime] = None
    sms_completed_at: Optional[datetime] = None
    last_inbound_at: Optional[datetime] = None
    last_outbound_at: Optional[datetime] = None
    last_interaction_at: Optional[datetime] = None
    owner_notified_at: Optional[datetime] = None


def apply_patch(record: Any, patch: BaseModel) -> Dict[str, Any]:
    """
    Copy the explicitly-set fields of ``patch`` onto ``record``.

    Returns:
        The dict of values that were applied
    """
    values = patch.model_dump(exclude_unset=True)
    for key, value in values.items():
        setattr(record, key, value)
    return values
