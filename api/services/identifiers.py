"""
Identifier normalization for cross-source identity matching.

Every identifier observed on an external platform (an email address, a phone
number, a messaging handle) is reduced to a canonical form before it is
looked up or stored, so that "Alice@Example.com " and "alice@example.com"
resolve to the same identity.
"""
import re
from typing import Optional


class InvalidIdentifierError(ValueError):
    """Raised for unknown identifier types or identifiers that normalize to nothing."""


# Identifier types
IDENTIFIER_EMAIL = "email"
IDENTIFIER_PHONE = "phone"
IDENTIFIER_TELEGRAM = "telegram"
IDENTIFIER_IMESSAGE_EMAIL = "imessage_email"
IDENTIFIER_IMESSAGE_PHONE = "imessage_phone"
IDENTIFIER_WHATSAPP = "whatsapp"

IDENTIFIER_TYPES = {
    IDENTIFIER_EMAIL,
    IDENTIFIER_PHONE,
    IDENTIFIER_TELEGRAM,
    IDENTIFIER_IMESSAGE_EMAIL,
    IDENTIFIER_IMESSAGE_PHONE,
    IDENTIFIER_WHATSAPP,
}

# Contact method types stored on CRM contacts
METHOD_EMAIL_PERSONAL = "email_personal"
METHOD_EMAIL_WORK = "email_work"
METHOD_PHONE = "phone"
METHOD_TELEGRAM = "telegram"
METHOD_WHATSAPP = "whatsapp"

EMAIL_METHOD_TYPES = (METHOD_EMAIL_PERSONAL, METHOD_EMAIL_WORK)

# Identifier type -> contact method types searched during exact matching
_METHOD_TYPES_BY_IDENTIFIER: dict[str, tuple[str, ...]] = {
    IDENTIFIER_EMAIL: EMAIL_METHOD_TYPES,
    IDENTIFIER_PHONE: (METHOD_PHONE,),
    IDENTIFIER_TELEGRAM: (METHOD_TELEGRAM,),
    IDENTIFIER_IMESSAGE_EMAIL: EMAIL_METHOD_TYPES,
    IDENTIFIER_IMESSAGE_PHONE: (METHOD_PHONE,),
    IDENTIFIER_WHATSAPP: (METHOD_WHATSAPP, METHOD_PHONE),
}

_NON_DIGIT = re.compile(r"\D")


def normalize_email(email: str) -> str:
    """Lowercase and trim an email address."""
    return email.strip().lower()


def normalize_phone(phone: str) -> str:
    """
    Normalize a phone number to E.164.

    Bare 10-digit numbers are assumed to be North American and get a +1
    country code; 11-digit numbers starting with 1 get a leading '+'.
    Everything else keeps its digits behind a '+'.

    Args:
        phone: Raw phone number in any formatting

    Returns:
        E.164 string, or "" if the input has no digits
    """
    phone = phone.strip()
    if not phone:
        return ""

    has_plus = phone.startswith("+")
    digits = _NON_DIGIT.sub("", phone)
    if not digits:
        return ""

    if len(digits) == 10 and not has_plus:
        return "+1" + digits
    return "+" + digits


def normalize_phone_loose(phone: str) -> str:
    """Strip phone formatting but keep a leading '+'. Used for import overlap checks."""
    if not phone:
        return ""
    digits = _NON_DIGIT.sub("", phone)
    if phone.startswith("+"):
        return "+" + digits
    return digits


def normalize_telegram(handle: str) -> str:
    """Trim, drop the leading '@' and lowercase a Telegram handle."""
    return handle.strip().lstrip("@").lower()


def normalize(raw: str, identifier_type: str) -> str:
    """
    Normalize an identifier according to its type.

    Pure and idempotent: normalize(normalize(x, t), t) == normalize(x, t).
    Unknown types are trimmed only.
    """
    if identifier_type in (IDENTIFIER_EMAIL, IDENTIFIER_IMESSAGE_EMAIL):
        return normalize_email(raw)
    if identifier_type in (IDENTIFIER_PHONE, IDENTIFIER_IMESSAGE_PHONE, IDENTIFIER_WHATSAPP):
        return normalize_phone(raw)
    if identifier_type == IDENTIFIER_TELEGRAM:
        return normalize_telegram(raw)
    return raw.strip()


def normalize_or_raise(raw: str, identifier_type: str) -> str:
    """
    Validate the identifier type and normalize, rejecting empty results.

    Raises:
        InvalidIdentifierError: unknown type or nothing left after normalization
    """
    if identifier_type not in IDENTIFIER_TYPES:
        raise InvalidIdentifierError(f"Unknown identifier type: {identifier_type!r}")
    normalized = normalize(raw or "", identifier_type)
    if not normalized:
        raise InvalidIdentifierError(
            f"Identifier {raw!r} of type {identifier_type} is empty after normalization"
        )
    return normalized


def method_types_for(identifier_type: str) -> tuple[str, ...]:
    """Contact method types that an identifier type can match against."""
    return _METHOD_TYPES_BY_IDENTIFIER.get(identifier_type, ())


def detect_identifier_type(identifier: str) -> str:
    """
    Guess whether a bare identifier is an email or a phone number.

    Used for sources like iMessage where a handle can be either.
    """
    identifier = identifier.strip()
    if "@" in identifier:
        return IDENTIFIER_EMAIL
    if identifier.startswith("+"):
        return IDENTIFIER_PHONE

    digits = _NON_DIGIT.sub("", identifier)
    if len(digits) >= 7 and len(digits) / len(identifier) > 0.5:
        return IDENTIFIER_PHONE

    return IDENTIFIER_EMAIL


def infer_name_from_email(email: str) -> Optional[str]:
    """
    Derive a display name from the local part of an email address.

    "john.smith2+work@example.com" -> "John Smith". Returns None when
    nothing usable is left.
    """
    parts = email.split("@")
    if len(parts) != 2:
        return None
    local = parts[0]

    plus_idx = local.find("+")
    if plus_idx > 0:
        local = local[:plus_idx]

    if "." in local:
        name_parts = local.split(".")
    elif "_" in local:
        name_parts = local.split("_")
    else:
        name_parts = [local]

    result = []
    for part in name_parts:
        part = part.strip().rstrip("0123456789")
        if part:
            result.append(part[0].upper() + part[1:].lower())

    if not result:
        return None
    return " ".join(result)
