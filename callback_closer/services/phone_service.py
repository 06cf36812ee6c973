"""
Phone number normalization.

Every number written to or looked up in the ledger goes through
``normalize_phone_number`` so stored and queried forms always match.
"""

import re
from typing import Optional

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

from callback_closer.config.settings import settings

_NON_DIGITS = re.compile(r"\D")


def normalize_phone_number(value: Optional[str], default_region: Optional[str] = None) -> str:
    """
    Canonicalize a phone number to E.164.

    Falls back to a best-effort ``+1`` reconstruction for 10/11 digit North
    American numbers, then to the trimmed input. Idempotent.

    Args:
        value: Raw phone number as received
        default_region: Region used for numbers without a country code

    Returns:
        str: Normalized number, or "" for empty input
    """
    trimmed = (value or "").strip()
    if not trimmed:
        return ""

    region = default_region or settings.default_phone_region
    try:
        parsed = phonenumbers.parse(trimmed, region)
        if phonenumbers.is_valid_number(parsed):
            return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)
    except NumberParseException:
        pass

    if trimmed.startswith("+"):
        return trimmed

    digits = _NON_DIGITS.sub("", trimmed)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"

    return trimmed


def format_phone_for_display(value: Optional[str]) -> str:
    """Format a stored number for people to read, e.g. in owner alerts."""
    if not value:
        return "-"
    try:
        parsed = phonenumbers.parse(value, settings.default_phone_region)
        return phonenumbers.format_number(parsed, PhoneNumberFormat.NATIONAL)
    except NumberParseException:
        return value
