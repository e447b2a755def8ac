"""Data normalization utilities for consistent data quality."""

import re
from typing import Optional


def normalize_phone(phone: Optional[str]) -> str:
    """
    Normalize phone to E.164 format (+15551234567).

    Accepts:
    - 10 digits: 5551234567 → +15551234567
    - 11 digits starting with 1: 15551234567 → +15551234567
    - Already E.164: +15551234567, +447911123456

    Raises:
        ValueError: If phone is empty or not a valid number
    """
    if not phone or not phone.strip():
        raise ValueError("Phone number is required.")

    cleaned = phone.strip()
    if cleaned.startswith("+"):
        digits = re.sub(r"\D", "", cleaned[1:])
        if 8 <= len(digits) <= 15 and not digits.startswith("0"):
            return f"+{digits}"
        raise ValueError(f"Invalid phone number '{phone}'.")

    digits = re.sub(r"\D", "", cleaned)
    if len(digits) == 10:
        return f"+1{digits}"
    elif len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"

    raise ValueError(f"Invalid phone number '{phone}'. Use 10-digit format (e.g., 5551234567).")


def slugify(text: Optional[str]) -> str:
    """Lowercase and collapse anything non-alphanumeric into single hyphens."""
    if not text:
        return ""
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
