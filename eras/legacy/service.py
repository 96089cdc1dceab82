"""
Legacy Access Service - single entry point used by the API and the sweep CLI.

Orchestrates between:
- LegacyAccessRepository (persistence in the key-value store)
- BeneficiaryRegistry (designation lifecycle)
- TriggerEvaluator (inactivity/date trigger, activity, cancel)
- UnlockOrchestrator (firing the unlock, validating access)
- SweepRunner (scheduled batch jobs)
- NotificationDispatcher (emails)
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from eras.config import FRONTEND_URL
from eras.email.client import EmailClient, get_email_client
from eras.legacy.beneficiaries import BeneficiaryChange, BeneficiaryRegistry, NewBeneficiary
from eras.legacy.models import Beneficiary, LegacyAccessConfig, OwnerProfile, UnlockType, utc_now
from eras.legacy.notifications import NotificationDispatcher
from eras.legacy.repository import LegacyAccessRepository
from eras.legacy.sweeps import InactivitySweepSummary, ReminderSweepSummary, SweepRunner
from eras.legacy.triggers import TriggerEvaluator, calculate_days_until_unlock
from eras.legacy.unlock import UnlockAccess, UnlockOrchestrator, UnlockOutcome
from eras.observability.logging import get_logger
from eras.observability.telemetry import log_event
from eras.storage.kv_store import KeyValueStore, get_kv_store

logger = get_logger(__name__)


class LegacyAccessService:
    """
    Service layer for legacy access.

    Collaborators are injectable; by default the process-wide store and email
    client are used and time comes from the system clock.
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        email_client: EmailClient | None = None,
        now_fn: Callable[[], datetime] = utc_now,
        frontend_url: str = FRONTEND_URL,
    ):
        self.now_fn = now_fn
        self.repository = LegacyAccessRepository(store or get_kv_store(), now_fn)
        self.dispatcher = NotificationDispatcher(
            email_client or get_email_client(), frontend_url, now_fn
        )
        self.orchestrator = UnlockOrchestrator(self.repository, self.dispatcher, now_fn)
        self.registry = BeneficiaryRegistry(
            self.repository, self.dispatcher, self.orchestrator, now_fn
        )
        self.triggers = TriggerEvaluator(
            self.repository, self.dispatcher, self.orchestrator, now_fn
        )
        self.sweeps = SweepRunner(self.repository, self.triggers, self.dispatcher, now_fn)

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def get_config(self, owner_id: str) -> LegacyAccessConfig:
        """Owner's config, created with defaults on first access."""
        return self.repository.get_config(owner_id)

    def days_until_unlock(self, config: LegacyAccessConfig) -> int | None:
        return calculate_days_until_unlock(config.trigger, self.now_fn())

    def remember_owner(self, owner_id: str, email: str, display_name: str | None) -> OwnerProfile:
        """
        Keep the owner's email and name on file for sweeps, which have no request context.

        Side Effects:
            - Writes the owner profile when it changed
        """
        current = self.repository.get_owner_profile(owner_id)
        if (
            current is not None
            and current.email == email.lower()
            and current.display_name == display_name
        ):
            return current
        return self.repository.save_owner_profile(owner_id, email, display_name)

    def delete_legacy_access_config(self, owner_id: str) -> bool:
        """
        Account deletion: drop the owner's config and dependent records.

        Returns:
            True if there was anything to delete
        """
        deleted = self.repository.delete_config(owner_id)
        if deleted is not None:
            log_event("legacy.config_deleted", user_id=owner_id)
        return deleted is not None

    # ------------------------------------------------------------------
    # Beneficiaries
    # ------------------------------------------------------------------

    def add_beneficiary(
        self, owner_id: str, data: NewBeneficiary, owner_email: str | None = None
    ) -> BeneficiaryChange:
        return self.registry.add_beneficiary(owner_id, data, owner_email)

    def remove_beneficiary(self, owner_id: str, beneficiary_id: str) -> Beneficiary:
        return self.registry.remove_beneficiary(owner_id, beneficiary_id)

    def send_beneficiary_notification(self, owner_id: str, beneficiary_id: str) -> BeneficiaryChange:
        return self.registry.send_beneficiary_notification(owner_id, beneficiary_id)

    def resend_verification_email(self, owner_id: str, beneficiary_id: str) -> BeneficiaryChange:
        return self.registry.resend_verification_email(owner_id, beneficiary_id)

    def update_beneficiary_email(
        self,
        owner_id: str,
        beneficiary_id: str,
        new_email: str,
        owner_email: str | None = None,
    ) -> BeneficiaryChange:
        return self.registry.update_beneficiary_email(owner_id, beneficiary_id, new_email, owner_email)

    def verify_beneficiary(self, token: str) -> Beneficiary:
        return self.registry.verify_beneficiary(token)

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    def update_inactivity_trigger(self, owner_id: str, months: int) -> LegacyAccessConfig:
        return self.triggers.update_inactivity_trigger(owner_id, months)

    def update_date_trigger(self, owner_id: str, unlock_date: datetime) -> LegacyAccessConfig:
        return self.triggers.update_date_trigger(owner_id, unlock_date)

    def update_user_activity(self, owner_id: str) -> LegacyAccessConfig:
        return self.triggers.record_activity(owner_id)

    def cancel_scheduled_unlock(self, cancel_token: str) -> LegacyAccessConfig:
        return self.triggers.cancel_scheduled_unlock(cancel_token)

    # ------------------------------------------------------------------
    # Unlock
    # ------------------------------------------------------------------

    def trigger_unlock(self, owner_id: str, unlock_type: UnlockType) -> UnlockOutcome:
        return self.orchestrator.trigger_unlock(owner_id, unlock_type)

    def validate_unlock_token(self, token_id: str) -> UnlockAccess:
        return self.orchestrator.validate_unlock_token(token_id)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def check_inactivity_triggers(self) -> InactivitySweepSummary:
        return self.sweeps.run_inactivity_sweep()

    def send_verification_reminders(self) -> ReminderSweepSummary:
        return self.sweeps.run_reminder_sweep()


# Singleton instance
_service: LegacyAccessService | None = None


def get_legacy_access_service() -> LegacyAccessService:
    """Get or create the legacy access service singleton."""
    global _service
    if _service is None:
        _service = LegacyAccessService()
    return _service
