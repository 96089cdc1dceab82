"""
Scheduler-facing endpoints.

An external scheduler (Cloud Scheduler, cron + curl) calls these once a day.
Both sweeps are idempotent, so retries and overlapping runs are harmless.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from eras.api.middleware.auth import require_cron_auth
from eras.legacy.service import LegacyAccessService, get_legacy_access_service
from eras.legacy.sweeps import InactivitySweepSummary, ReminderSweepSummary
from eras.observability.logging import get_logger

router = APIRouter(prefix="/api/cron", tags=["cron"])
logger = get_logger(__name__)


@router.post("/legacy-access/inactivity-sweep", response_model=InactivitySweepSummary)
def inactivity_sweep(
    _authenticated: bool = Depends(require_cron_auth),
    service: LegacyAccessService = Depends(get_legacy_access_service),
) -> InactivitySweepSummary:
    """Evaluate every owner's trigger: start grace periods and fire due unlocks."""
    try:
        summary = service.check_inactivity_triggers()
    except Exception as e:
        logger.error("Inactivity sweep failed: %s", e)
        raise HTTPException(status_code=500, detail="Inactivity sweep failed") from None

    logger.info("Inactivity sweep complete: %s", summary.model_dump())
    return summary


@router.post("/legacy-access/reminder-sweep", response_model=ReminderSweepSummary)
def reminder_sweep(
    _authenticated: bool = Depends(require_cron_auth),
    service: LegacyAccessService = Depends(get_legacy_access_service),
) -> ReminderSweepSummary:
    """Send due verification reminders to beneficiaries notified at unlock."""
    try:
        summary = service.send_verification_reminders()
    except Exception as e:
        logger.error("Reminder sweep failed: %s", e)
        raise HTTPException(status_code=500, detail="Reminder sweep failed") from None

    logger.info("Reminder sweep complete: %s", summary.model_dump())
    return summary
