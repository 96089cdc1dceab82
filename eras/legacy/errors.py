"""
Legacy access errors.

Every failure the core reports is one of these; the API layer maps them to
HTTP responses and sweeps catch them per owner.
"""

from __future__ import annotations


class LegacyAccessError(Exception):
    """Base exception for legacy access errors."""

    pass


class SelfDesignationError(LegacyAccessError):
    """Owner tried to designate their own email address."""

    pass


class DuplicateBeneficiaryError(LegacyAccessError):
    """A non-revoked beneficiary with this email already exists."""

    pass


class NotFoundError(LegacyAccessError):
    """Beneficiary, config or token not found."""

    pass


class InvalidStateError(LegacyAccessError):
    """Operation not valid for the current status."""

    pass


class ExpiredTokenError(LegacyAccessError):
    """Verification token is past its expiry."""

    pass


class ExpiredError(LegacyAccessError):
    """Unlock token is past its expiry."""

    pass


class ConcurrentModificationError(LegacyAccessError):
    """Config kept changing underneath a conditional write."""

    pass
