from __future__ import annotations

import math
import re
from typing import Any

SEGMENT_LENGTH = 160
DEFAULT_COST_PER_SEGMENT = 0.10

_PLACEHOLDER_RE = re.compile(r"\{[a-zA-Z_]+\}")

# placeholder key -> accepted spellings (matched case-insensitively)
_PLACEHOLDERS: dict[str, tuple[str, ...]] = {
    "FirstName": ("FirstName", "first_name", "firstname"),
    "LastName": ("LastName", "last_name", "lastname"),
    "PhoneNumber": ("PhoneNumber", "phone_number", "phonenumber"),
    "Amount": ("Amount",),
    "Currency": ("Currency",),
    "Category": ("Category",),
    "Date": ("Date",),
    "Organization": ("Organization",),
}


def format_phone_number(phone: str | None, country_code: str = "233") -> str:
    """
    Normalize a phone number to international digits without "+".
    0244123456 -> 233244123456, +233 24 412 3456 -> 233244123456.
    """
    if not phone:
        return ""
    formatted = re.sub(r"\s+", "", phone)
    if formatted.startswith("+"):
        formatted = formatted[1:]
    if formatted.startswith("0"):
        formatted = country_code + formatted[1:]
    if not formatted.startswith(country_code):
        formatted = country_code + formatted.lstrip("0")
    return formatted


def is_valid_phone(phone: str | None, country_code: str = "233") -> bool:
    formatted = format_phone_number(phone, country_code)
    return bool(re.fullmatch(re.escape(country_code) + r"\d{9}", formatted))


def has_placeholders(text: str) -> bool:
    return bool(_PLACEHOLDER_RE.search(text or ""))


def personalize_message(text: str, values: dict[str, Any]) -> str:
    """Fill {FirstName}-style placeholders; placeholders without a value are left as-is."""
    out = text or ""
    for key, spellings in _PLACEHOLDERS.items():
        value = values.get(key)
        if value is None or value == "":
            continue
        if key == "Amount" and isinstance(value, (int, float)):
            value = f"{value:,}"
        for spelling in spellings:
            out = re.sub(r"\{" + re.escape(spelling) + r"\}", lambda _m, v=str(value): v, out, flags=re.IGNORECASE)
    return out


def split_name(name: str | None) -> tuple[str, str]:
    parts = (name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def segment_count(message_length: int) -> int:
    return math.ceil(message_length / SEGMENT_LENGTH)


def calculate_sms_cost(message_length: int, recipient_count: int, cost_per_segment: float = DEFAULT_COST_PER_SEGMENT) -> float:
    return round(recipient_count * segment_count(message_length) * cost_per_segment, 2)
