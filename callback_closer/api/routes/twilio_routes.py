"""
API routes for Twilio voice, dial status and SMS webhooks.

Every handler authenticates first, answers 200 with valid TwiML for anything
it decides not to act on, and only returns an error status (401) for requests
that fail authentication. Duplicate and out-of-order deliveries are expected.
"""

import logging
from datetime import datetime
from typing import Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from callback_closer.config.settings import settings
from callback_closer.core.logging import log_twilio_event
from callback_closer.core.urls import TWILIO_STATUS_PATH, build_webhook_url
from callback_closer.core.webhook_auth import has_valid_webhook_request, unauthorized_response
from callback_closer.db import base_crud
from callback_closer.db.database import get_db
from callback_closer.db.models import CallStatus, LeadStatus, MessageParticipant, SubscriptionStatus
from callback_closer.models.ledger_schemas import CallUpdate, LeadUpdate
from callback_closer.services.compliance_service import handle_inbound_compliance_command
from callback_closer.services.messaging_service import (
    OutboundSendError,
    build_owner_notification_message,
    persist_inbound_message,
    record_outbound_message,
    send_and_persist_outbound_message,
)
from callback_closer.services.phone_service import normalize_phone_number
from callback_closer.services.recording_service import extract_recording_metadata, is_recording_only_callback
from callback_closer.services.sms_state_machine import advance_lead_conversation, service_prompt
from callback_closer.services.twilio_service import TwilioService, get_twilio_service
from callback_closer.services.twiml_service import (
    empty_messaging_twiml,
    forward_call_twiml,
    messaging_reply_twiml,
    not_configured_twiml,
    twiml_response,
    voice_error_twiml,
)
from callback_closer.services.usage_service import (
    describe_usage_limit,
    get_conversation_usage,
    usage_limit_owner_message,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/twilio", tags=["twilio"])

MISSED_DIAL_STATUSES = {"no-answer", "busy", "failed", "canceled"}


async def _form_payload(request: Request) -> Dict[str, str]:
    form_data = await request.form()
    return {key: value for key, value in form_data.items() if isinstance(value, str)}


def _field(payload: Dict[str, str], key: str) -> str:
    return (payload.get(key) or "").strip()


def _to_int(value: str):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _ack():
    return twiml_response(empty_messaging_twiml())


def classify_dial_status(dial_call_status: str):
    """
    Classify a ``DialCallStatus``.

    Returns:
        (answered, missed, CallStatus)
    """
    normalized = (dial_call_status or "").strip().lower()
    answered = normalized == "completed"
    missed = normalized in MISSED_DIAL_STATUSES
    if answered:
        return True, False, CallStatus.ANSWERED
    if missed:
        return False, True, CallStatus.MISSED
    return False, False, CallStatus.COMPLETED


@router.post("/voice")
async def handle_voice_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Handle an incoming call to a business number.

    Records the call and forwards it to the business with a dial timeout; the
    dial outcome comes back to ``/status``.
    """
    payload = await _form_payload(request)
    if not has_valid_webhook_request(request, payload, "voice"):
        return unauthorized_response()

    call_sid = _field(payload, "CallSid")
    try:
        raw_to = _field(payload, "To")
        raw_from = _field(payload, "From")
        to = normalize_phone_number(raw_to)
        from_ = normalize_phone_number(raw_from)

        business = base_crud.get_business_by_twilio_number(db, to, raw_to) if to else None

        call_fields = {
            "from_phone": from_ or raw_from,
            "from_phone_normalized": from_ or raw_from,
            "to_phone": to or raw_to,
            "to_phone_normalized": to or raw_to,
            "status": CallStatus.RECEIVED,
            "raw_payload": payload,
        }
        update_fields = {"raw_payload": payload}
        if _field(payload, "ParentCallSid"):
            call_fields["parent_call_sid"] = _field(payload, "ParentCallSid")
            update_fields["parent_call_sid"] = _field(payload, "ParentCallSid")

        if not business:
            if call_sid:
                base_crud.upsert_call(db, call_sid, CallUpdate(**call_fields), CallUpdate(**update_fields))
            log_twilio_event(
                "voice",
                "business_not_found",
                logging.WARNING,
                call_sid=call_sid or None,
                decision="say_not_configured",
            )
            return twiml_response(not_configured_twiml())

        if call_sid:
            base_crud.upsert_call(
                db,
                call_sid,
                CallUpdate(business_id=business.id, **call_fields),
                CallUpdate(**update_fields),
            )

        action_url = build_webhook_url(TWILIO_STATUS_PATH)
        xml = forward_call_twiml(
            forwarding_number=business.forwarding_number,
            timeout_seconds=business.missed_call_seconds,
            action_url=action_url,
            caller_id=business.twilio_phone_number,
            recording_callback_url=action_url if settings.twilio_record_calls else None,
        )
        log_twilio_event(
            "voice",
            "call_forwarded",
            call_sid=call_sid or None,
            business_id=business.id,
            recording=settings.twilio_record_calls,
            decision="dial_forwarding_number",
        )
        return twiml_response(xml)

    except Exception as e:
        log_twilio_event(
            "voice",
            "route_error",
            logging.ERROR,
            error=e,
            call_sid=call_sid or None,
            decision="say_error_and_hangup",
        )
        return twiml_response(voice_error_twiml())


@router.post("/status")
async def handle_status_webhook(
    request: Request,
    db: Session = Depends(get_db),
    twilio: TwilioService = Depends(get_twilio_service),
):
    """
    Handle the ``<Dial>`` action callback and recording status callbacks.

    A missed dial creates (or reuses) the call's lead and starts the SMS
    conversation, subject to subscription and usage limits.
    """
    payload = await _form_payload(request)
    if not has_valid_webhook_request(request, payload, "status"):
        log_twilio_event("status", "webhook_unauthorized", logging.WARNING, decision="reject_401")
        return unauthorized_response()

    call_sid = _field(payload, "CallSid") or None
    dial_call_sid = _field(payload, "DialCallSid") or None
    ids = {"call_sid": call_sid, "dial_call_sid": dial_call_sid}

    try:
        raw_to = _field(payload, "To")
        raw_from = _field(payload, "From")
        to = normalize_phone_number(raw_to)
        from_ = normalize_phone_number(raw_from)
        dial_call_status = _field(payload, "DialCallStatus")
        recording = extract_recording_metadata(payload)

        log_twilio_event(
            "status",
            "webhook_received",
            dial_call_status=dial_call_status or None,
            recording_status=recording.recording_status if recording else None,
            decision="processing",
            **ids,
        )

        recording_fields = {}
        if recording:
            recording_fields = {
                key: value for key, value in vars(recording).items() if value is not None
            }

        if is_recording_only_callback(payload):
            updated = base_crud.update_call_recording(
                db, call_sid, CallUpdate(raw_payload=payload, **recording_fields)
            )
            log_twilio_event(
                "status",
                "recording_metadata_persisted_only",
                recording_sid=recording.recording_sid,
                decision="update_call_recording_metadata" if updated else "noop_call_not_found",
                **ids,
            )
            return _ack()

        if not to or not call_sid:
            log_twilio_event("status", "missing_required_fields", logging.WARNING, decision="noop_missing_to_or_call_sid", **ids)
            return _ack()

        business = base_crud.get_business_by_twilio_number(db, to, raw_to)
        if not business:
            log_twilio_event("status", "business_not_found", logging.WARNING, decision="noop_business_not_found", **ids)
            return _ack()

        # Only fields present in the payload are written
        call_fields = {"raw_payload": payload, **recording_fields}
        optional_fields = {
            "parent_call_sid": _field(payload, "ParentCallSid") or None,
            "call_duration_seconds": _to_int(_field(payload, "CallDuration")),
            "dial_call_duration_seconds": _to_int(_field(payload, "DialCallDuration")),
        }
        call_fields.update({key: value for key, value in optional_fields.items() if value is not None})

        dial_fields = {}
        if dial_call_status:
            answered, missed, call_status = classify_dial_status(dial_call_status)
            dial_fields = {
                "dial_call_status": dial_call_status,
                "status": call_status,
                "answered": answered,
                "missed": missed,
            }
            if dial_call_sid:
                dial_fields["dial_call_sid"] = dial_call_sid

        # The first recorded dial outcome is final
        existing_call = base_crud.get_call_by_twilio_sid(db, call_sid)
        outcome_recorded = bool(existing_call and existing_call.dial_call_status)

        call = base_crud.upsert_call(
            db,
            call_sid,
            CallUpdate(
                business_id=business.id,
                from_phone=from_ or raw_from,
                from_phone_normalized=from_ or raw_from,
                to_phone=to,
                to_phone_normalized=to,
                **call_fields,
                **dial_fields,
            ),
            CallUpdate(business_id=business.id, **call_fields, **({} if outcome_recorded else dial_fields)),
        )
        missed = bool(call.missed)
        log_twilio_event(
            "status",
            "call_upserted",
            business_id=business.id,
            answered=call.answered,
            missed=missed,
            dial_outcome_kept=outcome_recorded and bool(dial_fields),
            decision="upsert_call",
            **ids,
        )

        if not missed:
            log_twilio_event("status", "not_missed_noop", business_id=business.id, decision="noop_not_missed", **ids)
            return _ack()

        caller_phone = from_ or raw_from
        lead, created = base_crud.find_or_create_lead_for_call(
            db,
            business_id=business.id,
            call_id=call.id,
            caller_phone=raw_from or caller_phone,
            caller_phone_normalized=caller_phone,
        )
        log_twilio_event(
            "status",
            "lead_created_for_missed_call" if created else "lead_reused_for_retry",
            business_id=business.id,
            lead_id=lead.id,
            decision="create_lead" if created else "reuse_existing_lead",
            **ids,
        )

        if business.subscription_status != SubscriptionStatus.ACTIVE:
            if not lead.billing_required:
                base_crud.update_lead(db, lead.id, LeadUpdate(billing_required=True))
            log_twilio_event("status", "billing_inactive_no_sms", business_id=business.id, lead_id=lead.id, decision="noop_billing_inactive", **ids)
            return _ack()

        if lead.sms_started_at or not business.twilio_phone_number:
            log_twilio_event(
                "status",
                "already_started_or_missing_twilio_number",
                business_id=business.id,
                lead_id=lead.id,
                decision="noop_retry_sms_already_started" if lead.sms_started_at else "noop_missing_twilio_number",
                **ids,
            )
            return _ack()

        _begin_conversation(db, twilio, business, lead, ids, "status")
        return _ack()

    except Exception as e:
        log_twilio_event("status", "route_error", logging.ERROR, error=e, decision="return_xml_noop", **ids)
        return _ack()


def _begin_conversation(db: Session, twilio: TwilioService, business, lead, ids: dict, route: str) -> None:
    """Start a lead's conversation unless the monthly conversation limit is reached."""
    usage = get_conversation_usage(db, business)
    if usage.limit_reached:
        _handle_usage_limit_reached(db, twilio, business, lead, usage, ids, route)
        return
    _start_conversation(db, twilio, business, lead, ids, route)


def _handle_usage_limit_reached(db: Session, twilio: TwilioService, business, lead, usage, ids: dict, route: str) -> None:
    if lead.billing_required:
        log_twilio_event(
            route,
            "usage_limit_already_flagged",
            business_id=business.id,
            lead_id=lead.id,
            decision="noop_owner_already_alerted",
            **ids,
        )
        return

    log_twilio_event(
        route,
        "usage_limit_reached",
        logging.WARNING,
        business_id=business.id,
        lead_id=lead.id,
        usage=describe_usage_limit(usage),
        decision="skip_initial_sms",
        **ids,
    )
    base_crud.update_lead(
        db,
        lead.id,
        LeadUpdate(billing_required=True, last_interaction_at=datetime.utcnow()),
    )

    if not business.notify_phone:
        return

    try:
        result = send_and_persist_outbound_message(
            db,
            twilio,
            business_id=business.id,
            lead_id=lead.id,
            from_phone=business.twilio_phone_number,
            to_phone=business.notify_phone,
            body=usage_limit_owner_message(usage),
            participant=MessageParticipant.OWNER,
        )
    except OutboundSendError as e:
        log_twilio_event(
            route,
            "usage_limit_owner_notify_failed",
            logging.ERROR,
            error=e,
            business_id=business.id,
            lead_id=lead.id,
            decision="owner_notification_failed",
            **ids,
        )
        return

    log_twilio_event(
        route,
        "usage_limit_owner_notify_suppressed" if result.suppressed else "usage_limit_owner_notified",
        business_id=business.id,
        lead_id=lead.id,
        decision="owner_notification_suppressed_opted_out" if result.suppressed else "owner_notification_sent",
        **ids,
    )


def _start_conversation(db: Session, twilio: TwilioService, business, lead, ids: dict, route: str) -> None:
    """Claim the lead, send the opening prompt, and undo the claim if nothing was sent."""
    if not base_crud.claim_lead_sms_start(db, lead.id):
        log_twilio_event(
            route,
            "initial_sms_already_claimed",
            business_id=business.id,
            lead_id=lead.id,
            decision="noop_retry_sms_already_started",
            **ids,
        )
        return

    try:
        result = send_and_persist_outbound_message(
            db,
            twilio,
            business_id=business.id,
            lead_id=lead.id,
            from_phone=business.twilio_phone_number,
            to_phone=lead.caller_phone_normalized,
            body=service_prompt(business),
        )
    except OutboundSendError as e:
        base_crud.release_lead_sms_start(db, lead.id)
        log_twilio_event(
            route,
            "initial_missed_call_sms_failed",
            logging.ERROR,
            error=e,
            business_id=business.id,
            lead_id=lead.id,
            decision="release_conversation_start",
            **ids,
        )
        return

    if result.suppressed:
        base_crud.release_lead_sms_start(db, lead.id)
        log_twilio_event(
            route,
            "initial_missed_call_sms_suppressed",
            logging.WARNING,
            business_id=business.id,
            lead_id=lead.id,
            decision="skip_opted_out_recipient",
            **ids,
        )
        return

    now = datetime.utcnow()
    base_crud.update_lead(
        db,
        lead.id,
        LeadUpdate(billing_required=False, last_outbound_at=now, last_interaction_at=now),
    )
    log_twilio_event(
        route,
        "initial_missed_call_sms_started",
        business_id=business.id,
        lead_id=lead.id,
        decision="send_initial_sms_and_mark_started",
        **ids,
    )


@router.post("/sms")
async def handle_sms_webhook(
    request: Request,
    db: Session = Depends(get_db),
    twilio: TwilioService = Depends(get_twilio_service),
):
    """
    Handle an inbound SMS from a caller.

    Compliance keywords are answered inline. Other texts advance the lead's
    qualification script and the next question is sent through the API.
    """
    payload = await _form_payload(request)
    if not has_valid_webhook_request(request, payload, "sms"):
        return unauthorized_response()

    message_sid = _field(payload, "MessageSid") or _field(payload, "SmsSid") or None
    ids = {"message_sid": message_sid}

    try:
        raw_to = _field(payload, "To")
        raw_from = _field(payload, "From")
        to = normalize_phone_number(raw_to)
        from_ = normalize_phone_number(raw_from)
        body = payload.get("Body") or ""

        if not to or not from_:
            log_twilio_event("sms", "missing_required_fields", logging.WARNING, decision="noop_missing_numbers", **ids)
            return _ack()

        business = base_crud.get_business_by_twilio_number(db, to, raw_to)
        if not business:
            log_twilio_event("sms", "business_not_found", logging.WARNING, decision="noop_business_not_found", **ids)
            return _ack()

        lead = base_crud.find_lead_for_caller(db, business.id, from_)
        lead_id = lead.id if lead else None

        inbound = persist_inbound_message(
            db,
            business_id=business.id,
            lead_id=lead_id,
            twilio_sid=message_sid,
            from_phone=from_,
            to_phone=to,
            body=body,
            raw_payload=payload,
        )

        compliance = handle_inbound_compliance_command(
            db,
            business_id=business.id,
            from_phone=raw_from or from_,
            body=body,
            message_sid=message_sid,
        )
        if compliance.handled:
            if not inbound.duplicate:
                record_outbound_message(
                    db,
                    business_id=business.id,
                    lead_id=lead_id,
                    from_phone=business.twilio_phone_number or to,
                    to_phone=from_,
                    body=compliance.reply_text,
                )
                if lead:
                    now = datetime.utcnow()
                    base_crud.update_lead(db, lead.id, LeadUpdate(last_inbound_at=now, last_interaction_at=now))
            log_twilio_event(
                "sms",
                "compliance_command_handled",
                business_id=business.id,
                lead_id=lead_id,
                command=compliance.command,
                duplicate=inbound.duplicate,
                decision=compliance.state_change,
                **ids,
            )
            return twiml_response(messaging_reply_twiml(compliance.reply_text))

        if inbound.duplicate:
            log_twilio_event("sms", "duplicate_delivery", business_id=business.id, lead_id=lead_id, decision="noop_duplicate", **ids)
            return _ack()

        if not lead:
            log_twilio_event("sms", "lead_not_found", business_id=business.id, decision="noop_no_lead", **ids)
            return _ack()

        now = datetime.utcnow()
        lead = base_crud.update_lead(db, lead.id, LeadUpdate(last_inbound_at=now, last_interaction_at=now))

        if (
            business.subscription_status != SubscriptionStatus.ACTIVE
            or lead.billing_required
            or not business.twilio_phone_number
        ):
            log_twilio_event("sms", "conversation_paused", business_id=business.id, lead_id=lead.id, decision="noop_paused", **ids)
            return _ack()

        # Opening text never went out; start it under the same usage gate as /status
        if lead.sms_started_at is None:
            log_twilio_event("sms", "conversation_not_started", business_id=business.id, lead_id=lead.id, decision="start_conversation", **ids)
            _begin_conversation(db, twilio, business, lead, ids, "sms")
            return _ack()

        transition = advance_lead_conversation(lead.sms_state, body, business)
        values = transition.field_updates.model_dump(exclude_unset=True)
        values.update(last_inbound_at=now, last_interaction_at=now)
        if transition.valid:
            values["sms_state"] = transition.next_state
        if transition.mark_qualified and lead.status == LeadStatus.NEW:
            values["status"] = LeadStatus.QUALIFIED
        if transition.completed:
            values["sms_completed_at"] = now

        updated_lead = base_crud.advance_lead_state(db, lead.id, lead.sms_state, LeadUpdate(**values))
        if updated_lead is None:
            log_twilio_event(
                "sms",
                "concurrent_state_change",
                logging.WARNING,
                business_id=business.id,
                lead_id=lead.id,
                decision="noop_state_already_advanced",
                **ids,
            )
            return _ack()

        log_twilio_event(
            "sms",
            "conversation_advanced",
            business_id=business.id,
            lead_id=lead.id,
            transition=transition.kind.value,
            sms_state=updated_lead.sms_state.value,
            decision="send_reply",
            **ids,
        )

        if transition.notify_owner and business.notify_phone and updated_lead.owner_notified_at is None:
            _notify_owner(db, twilio, business, updated_lead, ids)

        try:
            result = send_and_persist_outbound_message(
                db,
                twilio,
                business_id=business.id,
                lead_id=updated_lead.id,
                from_phone=business.twilio_phone_number,
                to_phone=updated_lead.caller_phone_normalized,
                body=transition.reply_text,
            )
            if result.suppressed:
                log_twilio_event("sms", "reply_suppressed", business_id=business.id, lead_id=updated_lead.id, decision="skip_opted_out_recipient", **ids)
            else:
                sent_at = datetime.utcnow()
                base_crud.update_lead(db, updated_lead.id, LeadUpdate(last_outbound_at=sent_at, last_interaction_at=sent_at))
        except OutboundSendError as e:
            log_twilio_event(
                "sms",
                "reply_send_failed",
                logging.ERROR,
                error=e,
                business_id=business.id,
                lead_id=updated_lead.id,
                decision="reply_not_sent",
                **ids,
            )

        return _ack()

    except Exception as e:
        log_twilio_event("sms", "route_error", logging.ERROR, error=e, decision="return_xml_noop", **ids)
        return _ack()


def _notify_owner(db: Session, twilio: TwilioService, business, lead, ids: dict) -> None:
    """Text the owner a lead summary once per lead."""
    if not base_crud.claim_owner_notification(db, lead.id):
        return

    try:
        result = send_and_persist_outbound_message(
            db,
            twilio,
            business_id=business.id,
            lead_id=lead.id,
            from_phone=business.twilio_phone_number,
            to_phone=business.notify_phone,
            body=build_owner_notification_message(business.name, lead),
            participant=MessageParticipant.OWNER,
        )
    except OutboundSendError as e:
        base_crud.release_owner_notification(db, lead.id)
        log_twilio_event(
            "sms",
            "owner_notification_failed",
            logging.ERROR,
            error=e,
            business_id=business.id,
            lead_id=lead.id,
            decision="release_owner_notification",
            **ids,
        )
        return

    if result.suppressed:
        base_crud.release_owner_notification(db, lead.id)
        log_twilio_event("sms", "owner_notification_suppressed", logging.WARNING, business_id=business.id, lead_id=lead.id, decision="skip_opted_out_owner", **ids)
        return

    base_crud.update_lead(db, lead.id, LeadUpdate(last_outbound_at=datetime.utcnow()))
    log_twilio_event("sms", "owner_notified", business_id=business.id, lead_id=lead.id, decision="owner_notification_sent", **ids)
