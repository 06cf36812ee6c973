"""
TwiML builders for voice and messaging webhook responses.
"""

from typing import Optional

from fastapi import Response
from twilio.twiml.messaging_response import MessagingResponse
from twilio.twiml.voice_response import VoiceResponse

from callback_closer.services.recording_service import build_dial_recording_options

NOT_CONFIGURED_MESSAGE = "Sorry, this number is not configured."
VOICE_ERROR_MESSAGE = "Sorry, we could not connect your call right now. Please try again later."


def forward_call_twiml(
    forwarding_number: str,
    timeout_seconds: int,
    action_url: str,
    caller_id: Optional[str] = None,
    recording_callback_url: Optional[str] = None,
) -> str:
    """
    Ring the business forwarding number and report the outcome to ``action_url``.

    Args:
        forwarding_number: Number to ring
        timeout_seconds: Seconds before the dial gives up
        action_url: Dial status callback
        caller_id: Caller ID presented to the business
        recording_callback_url: Recording status callback; recording is on when set
    """
    response = VoiceResponse()
    dial_options = {
        "timeout": timeout_seconds,
        "action": action_url,
        "method": "POST",
    }
    if caller_id:
        dial_options["caller_id"] = caller_id
    if recording_callback_url:
        dial_options.update(build_dial_recording_options(recording_callback_url))

    dial = response.dial(**dial_options)
    dial.number(forwarding_number)
    return str(response)


def say_and_hangup_twiml(message: str) -> str:
    response = VoiceResponse()
    response.say(message)
    response.hangup()
    return str(response)


def not_configured_twiml() -> str:
    return say_and_hangup_twiml(NOT_CONFIGURED_MESSAGE)


def voice_error_twiml() -> str:
    return say_and_hangup_twiml(VOICE_ERROR_MESSAGE)


def empty_messaging_twiml() -> str:
    return str(MessagingResponse())


def messaging_reply_twiml(body: str) -> str:
    response = MessagingResponse()
    response.message(body)
    return str(response)


def twiml_response(xml: str) -> Response:
    return Response(content=xml, media_type="text/xml")
