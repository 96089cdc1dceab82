"""
Eras legacy access - beneficiaries who inherit vault access when the owner goes quiet.

An owner designates beneficiaries; if the owner stops using Eras for the
configured number of months (after a 30-day grace period they can cancel) or a
chosen date arrives, verified beneficiaries receive durable unlock tokens.
"""

from eras.legacy.errors import (
    ConcurrentModificationError,
    DuplicateBeneficiaryError,
    ExpiredError,
    ExpiredTokenError,
    InvalidStateError,
    LegacyAccessError,
    NotFoundError,
    SelfDesignationError,
)
from eras.legacy.models import (
    Beneficiary,
    BeneficiaryStatus,
    LegacyAccessConfig,
    NotificationContext,
    NotificationTiming,
    Trigger,
    TriggerType,
    UnlockToken,
    UnlockType,
)

__all__ = [
    # Models
    "Beneficiary",
    "BeneficiaryStatus",
    "LegacyAccessConfig",
    "NotificationContext",
    "NotificationTiming",
    "Trigger",
    "TriggerType",
    "UnlockToken",
    "UnlockType",
    # Errors
    "ConcurrentModificationError",
    "DuplicateBeneficiaryError",
    "ExpiredError",
    "ExpiredTokenError",
    "InvalidStateError",
    "LegacyAccessError",
    "NotFoundError",
    "SelfDesignationError",
]
