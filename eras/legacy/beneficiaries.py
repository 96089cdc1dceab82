"""
Beneficiary Registry - designation lifecycle for an owner's beneficiaries.

Status flow:
    pending_unlock -> pending -> verified
    any -> revoked (terminal; the record is kept for audit)

Every operation mutates the config through a compare-and-swap update, then
writes the verification token index and sends email once the write has won.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from eras.config import IMMEDIATE_TOKEN_DAYS, MANUAL_TOKEN_DAYS
from eras.legacy.errors import (
    DuplicateBeneficiaryError,
    ExpiredTokenError,
    InvalidStateError,
    NotFoundError,
    SelfDesignationError,
)
from eras.legacy.models import (
    Beneficiary,
    BeneficiaryStatus,
    EmailHistoryEntry,
    FolderPermission,
    LegacyAccessConfig,
    NotificationContext,
    NotificationTiming,
    utc_now,
)
from eras.legacy.notifications import NotificationDispatcher, owner_display_name
from eras.legacy.repository import LegacyAccessRepository
from eras.legacy.tokens import generate_beneficiary_id, generate_token
from eras.legacy.unlock import UnlockGrant, UnlockOrchestrator, unlock_type_for
from eras.observability.logging import get_logger
from eras.observability.telemetry import counter, log_event

logger = get_logger(__name__)


class NewBeneficiary(BaseModel):
    """Owner input for designating a beneficiary."""

    name: str
    email: str
    phone: str | None = None
    personal_message: str | None = None
    folder_permissions: dict[str, FolderPermission] = Field(default_factory=dict)
    notification_timing: NotificationTiming = NotificationTiming.DEFERRED


@dataclass
class BeneficiaryChange:
    """A committed beneficiary change and, if an email went out, whether it was accepted."""

    beneficiary: Beneficiary
    email_sent: bool | None = None


def _arm_token(beneficiary: Beneficiary, now: datetime, days: int | None) -> str | None:
    """Issue a fresh verification token; returns the token it replaced."""
    old_token = beneficiary.verification_token
    beneficiary.verification_token = generate_token()
    beneficiary.token_expires_at = now + timedelta(days=days) if days is not None else None
    return old_token


class BeneficiaryRegistry:
    def __init__(
        self,
        repository: LegacyAccessRepository,
        dispatcher: NotificationDispatcher,
        orchestrator: UnlockOrchestrator,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.orchestrator = orchestrator
        self.now_fn = now_fn

    def _owner_name(self, owner_id: str) -> str:
        return owner_display_name(self.repository.get_owner_profile(owner_id))

    def _check_not_self(self, owner_id: str, email: str, owner_email: str | None) -> None:
        if owner_email is None:
            profile = self.repository.get_owner_profile(owner_id)
            owner_email = profile.email if profile else None
        if owner_email and email == owner_email.strip().lower():
            raise SelfDesignationError("You cannot add yourself as a beneficiary")

    # ------------------------------------------------------------------
    # Owner operations
    # ------------------------------------------------------------------

    def add_beneficiary(
        self,
        owner_id: str,
        data: NewBeneficiary,
        owner_email: str | None = None,
    ) -> BeneficiaryChange:
        """
        Designate a new beneficiary.

        Raises:
            SelfDesignationError: email is the owner's own
            DuplicateBeneficiaryError: a non-revoked beneficiary already has this email

        Side Effects:
            - Appends the beneficiary to the owner's config
            - Immediate timing: writes the token index and sends the verification email
        """
        email = data.email.strip().lower()
        self._check_not_self(owner_id, email, owner_email)
        now = self.now_fn()

        def apply(config: LegacyAccessConfig) -> Beneficiary:
            if config.active_with_email(email):
                raise DuplicateBeneficiaryError("This person is already a beneficiary")

            beneficiary = Beneficiary(
                id=generate_beneficiary_id(),
                name=data.name.strip(),
                email=email,
                phone=data.phone,
                personal_message=data.personal_message,
                status=BeneficiaryStatus.PENDING_UNLOCK,
                added_at=now,
                email_history=[EmailHistoryEntry(email=email, updated_at=now)],
                folder_permissions=dict(data.folder_permissions),
                added_with_trigger=config.trigger.snapshot(now),
                notification_timing=data.notification_timing,
            )
            if data.notification_timing == NotificationTiming.IMMEDIATE:
                beneficiary.status = BeneficiaryStatus.PENDING
                _arm_token(beneficiary, now, IMMEDIATE_TOKEN_DAYS)
                beneficiary.notification_sent_at = now
                beneficiary.notification_context = NotificationContext.IMMEDIATE

            config.beneficiaries.append(beneficiary)
            return beneficiary

        _, beneficiary = self.repository.update_config(owner_id, apply)
        logger.info(
            "Added beneficiary %s for user %s (%s)",
            beneficiary.id,
            owner_id,
            beneficiary.notification_timing.value,
        )
        counter("legacy.beneficiaries_added")

        change = BeneficiaryChange(beneficiary=beneficiary)
        if beneficiary.status == BeneficiaryStatus.PENDING:
            change.email_sent = self._send_verification(
                owner_id, beneficiary, NotificationContext.IMMEDIATE, IMMEDIATE_TOKEN_DAYS
            )
        return change

    def send_beneficiary_notification(self, owner_id: str, beneficiary_id: str) -> BeneficiaryChange:
        """
        Notify a deferred beneficiary now instead of at unlock.

        Raises:
            NotFoundError: unknown beneficiary
            InvalidStateError: beneficiary is not pending_unlock
        """
        now = self.now_fn()

        def apply(config: LegacyAccessConfig) -> Beneficiary:
            beneficiary = _require(config, beneficiary_id)
            if beneficiary.status != BeneficiaryStatus.PENDING_UNLOCK:
                raise InvalidStateError(
                    f"Beneficiary has status '{beneficiary.status.value}' and was already notified"
                )
            _arm_token(beneficiary, now, MANUAL_TOKEN_DAYS)
            beneficiary.status = BeneficiaryStatus.PENDING
            beneficiary.notification_timing = NotificationTiming.IMMEDIATE
            beneficiary.notification_context = NotificationContext.MANUAL
            beneficiary.notification_sent_at = now
            return beneficiary

        _, beneficiary = self.repository.update_config(owner_id, apply)
        email_sent = self._send_verification(
            owner_id, beneficiary, NotificationContext.MANUAL, MANUAL_TOKEN_DAYS
        )
        return BeneficiaryChange(beneficiary=beneficiary, email_sent=email_sent)

    def resend_verification_email(self, owner_id: str, beneficiary_id: str) -> BeneficiaryChange:
        """
        Re-arm and resend the verification token of a pending beneficiary.

        Unlock-time tokens stay non-expiring; every other token gets a fresh 14 days.

        Raises:
            NotFoundError: unknown beneficiary
            InvalidStateError: beneficiary is not pending
        """
        now = self.now_fn()

        def apply(config: LegacyAccessConfig) -> tuple[Beneficiary, str | None, int | None]:
            beneficiary = _require(config, beneficiary_id)
            if beneficiary.status != BeneficiaryStatus.PENDING:
                raise InvalidStateError("Only pending beneficiaries can be re-sent a verification email")

            if beneficiary.notification_context == NotificationContext.UNLOCK:
                days = None
            else:
                days = MANUAL_TOKEN_DAYS
                beneficiary.notification_context = NotificationContext.MANUAL
                beneficiary.notification_sent_at = now
            old_token = _arm_token(beneficiary, now, days)
            return beneficiary, old_token, days

        _, (beneficiary, old_token, days) = self.repository.update_config(owner_id, apply)
        if old_token:
            self.repository.delete_token_index(old_token)

        context = beneficiary.notification_context or NotificationContext.MANUAL
        email_sent = self._send_verification(owner_id, beneficiary, context, days)
        return BeneficiaryChange(beneficiary=beneficiary, email_sent=email_sent)

    def update_beneficiary_email(
        self,
        owner_id: str,
        beneficiary_id: str,
        new_email: str,
        owner_email: str | None = None,
    ) -> BeneficiaryChange:
        """
        Change a beneficiary's email and force re-verification of the new address.

        An unlock token issued to the old address is withdrawn; the new address
        receives its own once verified.

        Raises:
            NotFoundError: unknown beneficiary
            InvalidStateError: beneficiary is revoked
            SelfDesignationError / DuplicateBeneficiaryError: as for add_beneficiary
        """
        email = new_email.strip().lower()
        self._check_not_self(owner_id, email, owner_email)
        now = self.now_fn()

        def apply(config: LegacyAccessConfig) -> tuple[Beneficiary, str | None, str | None]:
            beneficiary = _require(config, beneficiary_id)
            if beneficiary.status == BeneficiaryStatus.REVOKED:
                raise InvalidStateError("Cannot change the email of a removed beneficiary")
            if config.active_with_email(email, exclude_id=beneficiary.id):
                raise DuplicateBeneficiaryError("This person is already a beneficiary")

            beneficiary.email_history.append(EmailHistoryEntry(email=email, updated_at=now))
            beneficiary.email = email
            beneficiary.status = BeneficiaryStatus.PENDING
            beneficiary.verified_at = None
            beneficiary.notification_timing = NotificationTiming.IMMEDIATE
            beneficiary.notification_context = NotificationContext.MANUAL
            beneficiary.notification_sent_at = now
            old_unlock_token_id = beneficiary.unlock_token_id
            beneficiary.unlock_token_id = None
            old_token = _arm_token(beneficiary, now, MANUAL_TOKEN_DAYS)
            return beneficiary, old_token, old_unlock_token_id

        _, (beneficiary, old_token, old_unlock_token_id) = self.repository.update_config(owner_id, apply)
        if old_token:
            self.repository.delete_token_index(old_token)
        if old_unlock_token_id:
            self.repository.delete_unlock_token(old_unlock_token_id)
            log_event("legacy.unlock_token_withdrawn", user_id=owner_id, beneficiary_id=beneficiary_id)
        logger.info("Updated email of beneficiary %s for user %s", beneficiary_id, owner_id)

        email_sent = self._send_verification(
            owner_id, beneficiary, NotificationContext.MANUAL, MANUAL_TOKEN_DAYS
        )
        return BeneficiaryChange(beneficiary=beneficiary, email_sent=email_sent)

    def remove_beneficiary(self, owner_id: str, beneficiary_id: str) -> Beneficiary:
        """
        Revoke a beneficiary. The record stays in the config for audit.

        Raises:
            NotFoundError: unknown beneficiary
        """
        now = self.now_fn()

        def apply(config: LegacyAccessConfig) -> tuple[Beneficiary, str | None]:
            beneficiary = _require(config, beneficiary_id)
            if beneficiary.status == BeneficiaryStatus.REVOKED:
                return beneficiary, None
            beneficiary.status = BeneficiaryStatus.REVOKED
            beneficiary.revoked_at = now
            return beneficiary, beneficiary.clear_verification_token()

        _, (beneficiary, old_token) = self.repository.update_config(owner_id, apply)
        if old_token:
            self.repository.delete_token_index(old_token)

        logger.info("Revoked beneficiary %s for user %s", beneficiary_id, owner_id)
        log_event("legacy.beneficiary_revoked", user_id=owner_id, beneficiary_id=beneficiary_id)
        return beneficiary

    # ------------------------------------------------------------------
    # Beneficiary operations
    # ------------------------------------------------------------------

    def verify_beneficiary(self, token: str) -> Beneficiary:
        """
        Confirm a beneficiary from the link in their verification email.

        If the owner's unlock already fired, access is granted on the spot.

        Raises:
            NotFoundError: no pending beneficiary holds this token
            ExpiredTokenError: token past tokenExpiresAt

        Side Effects:
            - Marks the beneficiary verified and clears the token
            - Removes the index entry, sends the confirmation email
            - Post-unlock: writes an UnlockToken and sends the unlock email
        """
        entry = self.repository.get_token_index(token)
        if entry is None or self.repository.find_config(entry.user_id) is None:
            raise NotFoundError("Verification token not found")

        now = self.now_fn()

        def apply(config: LegacyAccessConfig) -> tuple[Beneficiary, UnlockGrant | None]:
            beneficiary = config.find_beneficiary(entry.beneficiary_id)
            if (
                beneficiary is None
                or beneficiary.status != BeneficiaryStatus.PENDING
                or beneficiary.verification_token != token
            ):
                raise NotFoundError("Verification token not found")
            if beneficiary.token_expired(now):
                raise ExpiredTokenError("Verification token has expired")

            beneficiary.status = BeneficiaryStatus.VERIFIED
            beneficiary.verified_at = now
            beneficiary.clear_verification_token()

            grant = None
            if config.trigger.unlock_triggered_at is not None:
                grant = self.orchestrator.grant_access(config, beneficiary, unlock_type_for(config), now)
            return beneficiary, grant

        try:
            config, (beneficiary, grant) = self.repository.update_config(entry.user_id, apply)
        except NotFoundError:
            self.repository.delete_token_index(token)
            raise

        self.repository.delete_token_index(token)
        counter("legacy.beneficiaries_verified")
        log_event("legacy.beneficiary_verified", user_id=entry.user_id, beneficiary_id=beneficiary.id)

        owner_name = self._owner_name(entry.user_id)
        self.dispatcher.send_confirmation(beneficiary, owner_name)
        if grant is not None:
            self.orchestrator.issue_grants(config, [grant], owner_name)
        return beneficiary

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _send_verification(
        self,
        owner_id: str,
        beneficiary: Beneficiary,
        context: NotificationContext,
        expiration_days: int | None,
    ) -> bool:
        assert beneficiary.verification_token is not None
        self.repository.save_token_index(beneficiary.verification_token, owner_id, beneficiary.id)
        result = self.dispatcher.send_verification(
            beneficiary, self._owner_name(owner_id), context, expiration_days
        )
        return result.success


def _require(config: LegacyAccessConfig, beneficiary_id: str) -> Beneficiary:
    beneficiary = config.find_beneficiary(beneficiary_id)
    if beneficiary is None:
        raise NotFoundError("Beneficiary not found")
    return beneficiary
