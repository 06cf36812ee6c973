import pytest

from callback_closer.services.phone_service import format_phone_for_display, normalize_phone_number


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("+15125550142", "+15125550142"),
        ("(512) 555-0142", "+15125550142"),
        ("512.555.0142", "+15125550142"),
        ("1-512-555-0142", "+15125550142"),
        ("  +1 512 555 0142  ", "+15125550142"),
    ],
)
def test_normalizes_north_american_numbers(raw, expected):
    assert normalize_phone_number(raw) == expected


def test_empty_input_normalizes_to_empty_string():
    assert normalize_phone_number("") == ""
    assert normalize_phone_number(None) == ""
    assert normalize_phone_number("   ") == ""


def test_unparseable_input_is_returned_trimmed():
    assert normalize_phone_number("  abc  ") == "abc"


def test_short_code_is_kept():
    assert normalize_phone_number("12345") == "12345"


@pytest.mark.parametrize(
    "raw",
    ["+15125550142", "(512) 555-0142", "5125550142", "15125550142", "+1 555 123 0000", "12345", "abc", ""],
)
def test_normalization_is_idempotent(raw):
    once = normalize_phone_number(raw)
    assert normalize_phone_number(once) == once


def test_display_format():
    assert format_phone_for_display("+15125550142") == "(512) 555-0142"
    assert format_phone_for_display("") == "-"
    assert format_phone_for_display(None) == "-"
