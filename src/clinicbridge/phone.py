"""Summary: Phone number normalization helpers.

Importance: Gives conversations and owner routing a single E.164 key format.
Alternatives: Use the phonenumbers library for full numbering-plan validation.
"""

from __future__ import annotations

import re

from clinicbridge.errors import InvalidPhoneFormat


WHATSAPP_PREFIX = "whatsapp:"
_STRIP_PATTERN = re.compile(r"[^\d+]")


def normalize_e164(raw: str) -> str:
    """Summary: Normalize loose phone input to strict E.164.

    Importance: Accepts whatsapp:+1555..., +1555... and formatted input alike.
    Alternatives: Require callers to send pre-normalized numbers.
    """

    value = (raw or "").strip()
    if value.startswith(WHATSAPP_PREFIX):
        value = value[len(WHATSAPP_PREFIX):]
    value = _STRIP_PATTERN.sub("", value)
    if not value.startswith("+"):
        raise InvalidPhoneFormat("Phone number must be in E.164 format (+...)")
    digits = value[1:]
    if not digits or not digits.isdigit():
        raise InvalidPhoneFormat("Phone number must contain only digits after '+'")
    return value


def to_whatsapp_address(raw: str) -> str:
    """Return the gateway address form, e.g. whatsapp:+15551234567."""

    return f"{WHATSAPP_PREFIX}{normalize_e164(raw)}"
