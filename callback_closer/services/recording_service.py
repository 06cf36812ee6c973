"""
Dial recording options and recording callback parsing.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

DIAL_RECORDING_MODE = "record-from-answer-dual"
DIAL_RECORDING_EVENTS = "completed"


@dataclass
class RecordingMetadata:
    recording_sid: Optional[str] = None
    recording_url: Optional[str] = None
    recording_status: Optional[str] = None
    recording_duration_seconds: Optional[int] = None


def _to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


def build_dial_recording_options(recording_status_callback_url: str) -> Dict[str, Any]:
    """Keyword arguments for ``VoiceResponse.dial`` that turn on call recording."""
    return {
        "record": DIAL_RECORDING_MODE,
        "recording_status_callback": recording_status_callback_url,
        "recording_status_callback_method": "POST",
        "recording_status_callback_event": DIAL_RECORDING_EVENTS,
    }


def extract_recording_metadata(payload: Mapping[str, Any]) -> Optional[RecordingMetadata]:
    """
    Pull recording fields out of a Twilio callback.

    Returns:
        RecordingMetadata, or None when the payload carries no recording fields
    """
    metadata = RecordingMetadata(
        recording_sid=_clean(payload.get("RecordingSid")),
        recording_url=_clean(payload.get("RecordingUrl")),
        recording_status=_clean(payload.get("RecordingStatus")),
        recording_duration_seconds=_to_int(payload.get("RecordingDuration")),
    )
    if (
        metadata.recording_sid is None
        and metadata.recording_url is None
        and metadata.recording_status is None
        and metadata.recording_duration_seconds is None
    ):
        return None
    return metadata


def is_recording_only_callback(payload: Mapping[str, Any]) -> bool:
    """A recording status callback: recording fields and CallSid, but no To or DialCallStatus."""
    return (
        extract_recording_metadata(payload) is not None
        and bool(_clean(payload.get("CallSid")))
        and not _clean(payload.get("To"))
        and not _clean(payload.get("DialCallStatus"))
    )
