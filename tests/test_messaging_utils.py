import pytest

from app.chms.modules.messaging.utils import (
    calculate_sms_cost,
    format_phone_number,
    has_placeholders,
    is_valid_phone,
    personalize_message,
    segment_count,
    split_name,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0244123456", "233244123456"),
        ("+233 24 412 3456", "233244123456"),
        ("233244123456", "233244123456"),
        ("244123456", "233244123456"),
        ("", ""),
        (None, ""),
    ],
)
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


def test_format_phone_number_other_country():
    assert format_phone_number("08031234567", "234") == "2348031234567"


def test_is_valid_phone():
    assert is_valid_phone("0244123456")
    assert not is_valid_phone("02441234")
    assert not is_valid_phone("024412345678")
    assert not is_valid_phone("")


def test_personalize_message():
    text = "Hi {FirstName} {last_name}, give {Currency} {Amount} to {Organization}. {Unknown}"
    out = personalize_message(
        text,
        {"FirstName": "Ama", "LastName": "Mensah", "Currency": "GHS", "Amount": 1500, "Organization": "Grace Chapel"},
    )
    assert out == "Hi Ama Mensah, give GHS 1,500 to Grace Chapel. {Unknown}"


def test_personalize_message_leaves_missing_values():
    assert personalize_message("Dear {FirstName}", {"FirstName": ""}) == "Dear {FirstName}"
    assert personalize_message("Dear {firstname}", {"FirstName": "Kofi"}) == "Dear Kofi"


def test_has_placeholders():
    assert has_placeholders("Hello {FirstName}")
    assert not has_placeholders("Hello everyone")
    assert not has_placeholders(None)


def test_split_name():
    assert split_name("Ama Serwaa Mensah") == ("Ama", "Serwaa Mensah")
    assert split_name("Ama") == ("Ama", "")
    assert split_name(None) == ("", "")


def test_segments_and_cost():
    assert segment_count(0) == 0
    assert segment_count(160) == 1
    assert segment_count(161) == 2
    assert calculate_sms_cost(161, 3) == 0.6
    assert calculate_sms_cost(100, 10, cost_per_segment=0.05) == 0.5
