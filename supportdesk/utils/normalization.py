"""Data normalization utilities for consistent matching across providers."""

import re
from typing import Optional


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a Turkish phone number to E.164 format (+905321234567).

    Accepts:
    - 10 digits: 5321234567 → +905321234567
    - 11 digits with trunk prefix: 05321234567 → +905321234567
    - 12 digits with country code: 905321234567 → +905321234567
    - Already E.164: +905321234567 → +905321234567

    Args:
        phone: Raw phone input

    Returns:
        E.164 formatted phone or None if empty

    Raises:
        ValueError: If phone is not a valid Turkish phone number
    """
    if not phone:
        return None

    digits = re.sub(r"\D", "", phone.strip())
    if not digits:
        return None

    if len(digits) == 10:
        return f"+90{digits}"
    elif len(digits) == 11 and digits.startswith("0"):
        return f"+90{digits[1:]}"
    elif len(digits) == 12 and digits.startswith("90"):
        return f"+{digits}"

    raise ValueError(f"Invalid phone number '{phone}'. Use 10-digit format (e.g., 5321234567).")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Normalize email to lowercase.

    Args:
        email: Raw email input

    Returns:
        Lowercased email or None if empty
    """
    if not email:
        return None
    return email.strip().lower()


def normalize_name(name: Optional[str]) -> Optional[str]:
    """Strip whitespace and collapse internal spaces."""
    if not name:
        return None
    return " ".join(name.split())
