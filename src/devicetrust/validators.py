"""Identifier validation, masking and handle suggestions."""

import random
import re
from typing import List, Optional, Tuple

HANDLE_RE = re.compile(r"^@[a-zA-Z0-9_]+$")
REGISTRATION_HANDLE_RE = re.compile(r"^@[a-zA-Z0-9_]{1,29}$")
PIN_LENGTH = 4
CODE_LENGTH = 6

# Minimum national number length per supported country code
MIN_PHONE_DIGITS = {"+44": 10, "+65": 8}

INVALID_HANDLE_MESSAGE = "Please enter a valid handle starting with @"
COUNTRY_NAMES = {"+44": "UK", "+65": "Singapore"}
INVALID_REGISTRATION_HANDLE_MESSAGE = (
    "Handle must start with @ and contain 1-29 letters, numbers or underscores"
)


def digits_only(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def validate_handle(handle: str) -> bool:
    """Login handles: ``@`` followed by word characters, at least 2 chars."""
    handle = (handle or "").strip()
    return len(handle) >= 2 and bool(HANDLE_RE.match(handle))


def validate_registration_handle(handle: str) -> bool:
    return bool(REGISTRATION_HANDLE_RE.match((handle or "").strip()))


def validate_phone(number: str, country_code: str = "+44") -> bool:
    """Check the national part of a UK or Singapore number."""
    minimum = MIN_PHONE_DIGITS.get(country_code)
    if minimum is None:
        return False
    return len(digits_only(number)) >= minimum


def full_phone_number(number: str, country_code: str = "+44") -> str:
    """Join a country code and a national number into E.164-ish form."""
    number = (number or "").strip()
    if number.startswith("+"):
        return "+" + digits_only(number)
    return f"{country_code}{digits_only(number)}"


def split_phone_number(phone: str, default_country_code: str = "+44") -> Tuple[str, str]:
    """Split ``+4477...`` into ``("+44", "77...")``."""
    phone = (phone or "").strip()
    for code in MIN_PHONE_DIGITS:
        if phone.startswith(code):
            return code, digits_only(phone[len(code):])
    return default_country_code, digits_only(phone)


def is_handle(identifier: Optional[str]) -> bool:
    return bool(identifier) and identifier.startswith("@")


def mask_handle(handle: str) -> str:
    """Mask all but the first and last character of a handle.

    >>> mask_handle("@alice")
    '@a***e'
    """
    if not handle or len(handle) <= 3:
        return handle
    stars = "*" * min(len(handle) - 3, 3)
    return f"{handle[0]}{handle[1]}{stars}{handle[-1]}"


def mask_phone(phone: str) -> str:
    if not phone:
        return ""
    return f"*******{phone[-4:]}"


def local_handle_suggestions(handle: str, rng: Optional[random.Random] = None) -> List[str]:
    """Alternatives offered when a handle is taken or not the user's."""
    base = (handle or "").lstrip("@")
    if not base:
        return []
    rng = rng or random.Random()
    return [
        f"@{base}1",
        f"@{base}2",
        f"@{base}_app",
        f"@{base}_{rng.randrange(1000)}",
    ]


def invalid_phone_message(country_code: str) -> str:
    country = COUNTRY_NAMES.get(country_code, "UK/Singapore")
    return f"Please enter a valid {country} phone number"
