# app/services/phone_numbers.py
from __future__ import annotations
import logging
import re

import phonenumbers
from phonenumbers import PhoneNumberFormat

logger = logging.getLogger(__name__)


def normalize_e164(raw: str | None, region: str = "US") -> str | None:
    """Caller ID / admin input → E.164 using Google's phonenumbers library."""
    if not raw:
        return None

    raw = raw.strip()
    try:
        parsed = phonenumbers.parse(raw, region)
    except phonenumbers.phonenumberutil.NumberParseException:
        logger.info("[phone] unparseable number: '%s'", raw[:4] + "***")
        return None

    if not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)


def caller_key(raw: str | None, region: str = "US") -> str:
    """
    Stable identity for an inbound caller. Falls back to the raw digits when
    the carrier sends something phonenumbers can't parse.
    """
    normalized = normalize_e164(raw, region)
    if normalized:
        return normalized
    return re.sub(r"[^\d+]", "", raw or "")


def normalize_destination(digits: str | None, international_prefix: str = "+") -> str | None:
    """
    Keypad entry → dialable number: keep digits only, drop one leading 0,
    then prefix the international code. None when nothing is left.
    """
    cleaned = re.sub(r"\D", "", digits or "")
    if cleaned.startswith("0"):
        cleaned = cleaned[1:]
    if not cleaned:
        return None
    return f"{international_prefix}{cleaned}"
