"""
promptpro/models/identity.py

Storage-independent identity values.

Ids reach the core as strings, UUIDs, integers or driver-native objects
(e.g. a BSON ObjectId). Everything is compared through its canonical text
form so that role and ownership checks never depend on the store's id type.
"""

from typing import Any, Optional


def normalize_id(value: Any) -> str:
    """Return the canonical text form of an identity value.

    Raises:
        ValueError: If the value is None or blank
    """
    if value is None:
        raise ValueError("identity value is required")
    text = str(value).strip()
    if not text:
        raise ValueError("identity value must not be blank")
    return text


def normalize_optional_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def same_identity(left: Any, right: Any) -> bool:
    """True when both values identify the same entity. None never matches."""
    if left is None or right is None:
        return False
    try:
        return normalize_id(left) == normalize_id(right)
    except ValueError:
        return False


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()
