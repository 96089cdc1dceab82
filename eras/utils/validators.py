"""
Input validation utilities for legacy access requests.

Validates owner input before it reaches the registry so stored records stay
well-formed (emails are also the beneficiary's identity key).
"""

from __future__ import annotations

import re

from eras.config import (
    MAX_FOLDER_PERMISSIONS,
    MAX_NAME_LENGTH,
    MAX_PERSONAL_MESSAGE_LENGTH,
    MAX_PHONE_LENGTH,
)

# Pragmatic address check: one @, no whitespace, a dot in the domain
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_EMAIL_LENGTH = 254  # RFC 5321

PHONE_PATTERN = re.compile(r"^[0-9+()\-.\s]+$")

# Folder ids are opaque but must be safe as record key fragments
FOLDER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-:]{1,128}$")


class ValidationError(ValueError):
    """Raised when input validation fails."""

    pass


def normalize_email(email: str) -> str:
    """Lower-case and trim an address. Beneficiary uniqueness is case-insensitive."""
    return email.strip().lower()


def validate_email_address(email: str) -> str:
    """
    Validate and normalize an email address.

    Raises:
        ValidationError: If the address is malformed or too long
    """
    email = normalize_email(email)
    if not email:
        raise ValidationError("Email address is required")
    if len(email) > MAX_EMAIL_LENGTH:
        raise ValidationError(f"Email address exceeds maximum length of {MAX_EMAIL_LENGTH}")
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Invalid email address")
    return email


def validate_name(name: str) -> str:
    name = name.strip()
    if not name:
        raise ValidationError("Name is required")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name exceeds maximum length of {MAX_NAME_LENGTH}")
    return name


def validate_phone(phone: str | None) -> str | None:
    if phone is None:
        return None
    phone = phone.strip()
    if not phone:
        return None
    if len(phone) > MAX_PHONE_LENGTH or not PHONE_PATTERN.match(phone):
        raise ValidationError("Invalid phone number")
    return phone


def validate_personal_message(message: str | None) -> str | None:
    if message is None:
        return None
    message = message.strip()
    if not message:
        return None
    if len(message) > MAX_PERSONAL_MESSAGE_LENGTH:
        raise ValidationError(
            f"Personal message exceeds maximum length of {MAX_PERSONAL_MESSAGE_LENGTH}"
        )
    return message


def validate_folder_ids(folder_ids: list[str]) -> list[str]:
    """
    Raises:
        ValidationError: Too many folders, or an id with unsafe characters
    """
    if len(folder_ids) > MAX_FOLDER_PERMISSIONS:
        raise ValidationError(f"At most {MAX_FOLDER_PERMISSIONS} folders can be shared")
    for folder_id in folder_ids:
        if not FOLDER_ID_PATTERN.match(folder_id):
            raise ValidationError("Invalid folder id")
    return folder_ids
