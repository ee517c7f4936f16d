"""Phone number helpers: normalization, display and log masking."""

import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D+")
COUNTRY_CODE = "55"


def digits_only(value: str) -> str:
    return _NON_DIGITS.sub("", value or "")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to country code + area code + number digits.

    Numbers already carrying the country code are kept; 10-11 digit
    national numbers get it prepended. Anything else is rejected.

    Returns:
        Digits string (e.g. "5511987654321") or None
    """
    if not raw:
        return None
    digits = digits_only(str(raw))
    if digits.startswith(COUNTRY_CODE) and 12 <= len(digits) <= 13:
        return digits
    if 10 <= len(digits) <= 11:
        return COUNTRY_CODE + digits
    return None


def format_phone(raw: str) -> str:
    """Human-readable national format: "(11) 98765-4321"."""
    digits = digits_only(raw)
    local = digits[2:] if digits.startswith(COUNTRY_CODE) and len(digits) > 11 else digits
    if len(local) == 11:
        return f"({local[:2]}) {local[2:7]}-{local[7:]}"
    if len(local) == 10:
        return f"({local[:2]}) {local[2:6]}-{local[6:]}"
    return raw


def mask_phone(phone: Optional[str]) -> str:
    """
    Mask a phone number for logging.

    Keeps country code, area code and the first three digits:
    5511987654321 -> 5511987****
    """
    digits = digits_only(phone or "")
    if len(digits) < 8:
        return "***"
    return f"{digits[:7]}****"
