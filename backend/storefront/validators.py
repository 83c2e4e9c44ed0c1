"""Shared input sanitizers for API models."""

from __future__ import annotations

import re

NAME_MAX_LENGTH = 80
NOTE_MAX_LENGTH = 400
ADDRESS_MAX_LENGTH = 200
PRODUCT_REF_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_\-]{0,127}$")
PHONE_PATTERN = re.compile(r"^[0-9+()\-\.\s]{6,32}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]{1,64}@[^@\s]+\.[^@\s]{2,}$")


def _squash_whitespace(text: str) -> str:
    return " ".join(text.split())


def normalize_display_name(value: str | None, *, field: str = "name") -> str | None:
    if value is None:
        return None
    cleaned = _squash_whitespace(value.strip())
    if not cleaned:
        return None
    if len(cleaned) > NAME_MAX_LENGTH:
        raise ValueError(f"{field} must be <= {NAME_MAX_LENGTH} characters")
    return cleaned


def normalize_email(value: str) -> str:
    cleaned = (value or "").strip().lower()
    if len(cleaned) > 320 or not EMAIL_PATTERN.fullmatch(cleaned):
        raise ValueError("email must be a valid address")
    return cleaned


def normalize_phone(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    if not PHONE_PATTERN.fullmatch(cleaned):
        raise ValueError(
            "phone must contain digits, spaces, '.', '-', '()' or '+' and be 6-32 characters"
        )
    return cleaned


def normalize_address_line(value: str | None, *, field: str = "address") -> str:
    if value is None:
        return ""
    cleaned = _squash_whitespace(value.strip())
    if len(cleaned) > ADDRESS_MAX_LENGTH:
        raise ValueError(f"{field} must be <= {ADDRESS_MAX_LENGTH} characters")
    return cleaned


def normalize_note(
    value: str | None, *, field: str = "note", max_length: int = NOTE_MAX_LENGTH
) -> str | None:
    if value is None:
        return None
    cleaned = _squash_whitespace(value.strip())
    if not cleaned:
        return None
    if len(cleaned) > max_length:
        raise ValueError(f"{field} must be <= {max_length} characters")
    return cleaned


def normalize_product_ref(value: str) -> str:
    cleaned = (value or "").strip().lower()
    if not PRODUCT_REF_PATTERN.fullmatch(cleaned):
        raise ValueError("productRef must be a catalog slug")
    return cleaned


__all__ = [
    "NAME_MAX_LENGTH",
    "NOTE_MAX_LENGTH",
    "normalize_address_line",
    "normalize_display_name",
    "normalize_email",
    "normalize_note",
    "normalize_phone",
    "normalize_product_ref",
]
