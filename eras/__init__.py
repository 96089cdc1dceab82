"""Eras legacy access - dead-man's-switch beneficiaries for the Eras vault"""

from __future__ import annotations

__version__ = "1.0.0"


# Lazy imports for the legacy module
def __getattr__(name: str):
    """
    Lazy imports to avoid loading the web and storage stack when only importing models.
    """
    if name in ("Beneficiary", "LegacyAccessConfig", "UnlockToken"):
        from eras.legacy import models

        return getattr(models, name)

    if name == "LegacyAccessService":
        from eras.legacy.service import LegacyAccessService

        return LegacyAccessService

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "Beneficiary",
    "LegacyAccessConfig",
    "LegacyAccessService",
    "UnlockToken",
]
