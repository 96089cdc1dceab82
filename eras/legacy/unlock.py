"""
Unlock Orchestrator - fires an owner's legacy unlock and validates the resulting access grants.

Firing is split in two so it can run inside a compare-and-swap config update:

1. apply_unlock() mutates the config only (statuses, tokens, unlockTriggeredAt)
   and returns an UnlockOutcome describing what happened.
2. complete() runs after the config is committed: writes the UnlockToken
   records and sends the emails.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from eras.config import UNLOCK_TOKEN_YEARS
from eras.legacy.errors import ExpiredError, NotFoundError
from eras.legacy.models import (
    Beneficiary,
    BeneficiaryStatus,
    LegacyAccessConfig,
    NotificationContext,
    TriggerType,
    UnlockToken,
    UnlockType,
    utc_now,
)
from eras.legacy.notifications import NotificationDispatcher, owner_display_name
from eras.legacy.repository import LegacyAccessRepository
from eras.legacy.tokens import generate_token
from eras.observability.logging import get_logger
from eras.observability.telemetry import counter, log_event

logger = get_logger(__name__)


@dataclass
class UnlockGrant:
    """An UnlockToken issued to one verified beneficiary."""

    beneficiary: Beneficiary
    token: UnlockToken


@dataclass
class UnlockOutcome:
    owner_id: str
    unlock_type: UnlockType
    fired: bool = False
    notified: list[Beneficiary] = field(default_factory=list)
    grants: list[UnlockGrant] = field(default_factory=list)
    retired_cancel_token: str | None = None


@dataclass
class UnlockAccess:
    """What a beneficiary holding a valid unlock token may see."""

    owner_id: str
    beneficiary: Beneficiary
    personal_message: str | None
    unlock_type: UnlockType
    folder_permissions: dict[str, str]
    first_used_at: datetime | None


def unlock_type_for(config: LegacyAccessConfig) -> UnlockType:
    if config.trigger.type == TriggerType.DATE:
        return UnlockType.MANUAL_DATE
    return UnlockType.GRACE_PERIOD_EXPIRED


class UnlockOrchestrator:
    def __init__(
        self,
        repository: LegacyAccessRepository,
        dispatcher: NotificationDispatcher,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.now_fn = now_fn

    def grant_access(
        self,
        config: LegacyAccessConfig,
        beneficiary: Beneficiary,
        unlock_type: UnlockType,
        now: datetime,
    ) -> UnlockGrant | None:
        """
        Issue the beneficiary's UnlockToken in memory (config mutation only).

        Returns None when the beneficiary is not verified or already holds one.
        """
        if beneficiary.status != BeneficiaryStatus.VERIFIED or beneficiary.unlock_token_id:
            return None

        token = UnlockToken(
            token_id=generate_token(),
            user_id=config.user_id,
            beneficiary_id=beneficiary.id,
            unlock_type=unlock_type,
            created_at=now,
            expires_at=now + timedelta(days=365 * UNLOCK_TOKEN_YEARS),
            folder_permissions=dict(beneficiary.folder_permissions),
        )
        beneficiary.unlock_token_id = token.token_id
        return UnlockGrant(beneficiary=beneficiary, token=token)

    def apply_unlock(
        self,
        config: LegacyAccessConfig,
        unlock_type: UnlockType,
        now: datetime,
    ) -> UnlockOutcome:
        """
        Transition the config for a firing trigger. No I/O.

        - pending_unlock beneficiaries get a never-expiring verification token
        - verified beneficiaries get one UnlockToken each
        - unlockTriggeredAt is set and the grace period cancel link is retired
        """
        outcome = UnlockOutcome(owner_id=config.user_id, unlock_type=unlock_type)
        if config.trigger.unlock_triggered_at is not None:
            return outcome

        for beneficiary in config.beneficiaries:
            if beneficiary.status == BeneficiaryStatus.PENDING_UNLOCK:
                beneficiary.status = BeneficiaryStatus.PENDING
                beneficiary.verification_token = generate_token()
                beneficiary.token_expires_at = None
                beneficiary.notification_context = NotificationContext.UNLOCK
                beneficiary.notification_sent_at = now
                beneficiary.reminders_sent = 0
                beneficiary.last_reminder_sent_at = None
                outcome.notified.append(beneficiary)
            elif grant := self.grant_access(config, beneficiary, unlock_type, now):
                outcome.grants.append(grant)

        config.trigger.unlock_triggered_at = now
        outcome.retired_cancel_token = config.trigger.cancel_token
        config.trigger.cancel_token = None
        outcome.fired = True
        return outcome

    def complete(self, config: LegacyAccessConfig, outcome: UnlockOutcome) -> UnlockOutcome:
        """
        Persist the side records of a committed unlock and send its emails.

        Side Effects:
            - Writes verification index entries and UnlockToken records
            - Deletes the retired cancel record
            - Sends deferred verification and unlock-notification emails
        """
        if not outcome.fired and not outcome.grants:
            return outcome

        if outcome.retired_cancel_token:
            self.repository.delete_cancel_record(outcome.retired_cancel_token)

        owner_name = owner_display_name(self.repository.get_owner_profile(config.user_id))

        for beneficiary in outcome.notified:
            self.repository.save_token_index(
                beneficiary.verification_token, config.user_id, beneficiary.id
            )
            self.dispatcher.send_verification(
                beneficiary, owner_name, NotificationContext.UNLOCK, expiration_days=None
            )

        self.issue_grants(config, outcome.grants, owner_name)

        if outcome.fired:
            counter("legacy.unlocks_triggered")
            log_event(
                "legacy.unlock_triggered",
                user_id=config.user_id,
                unlock_type=outcome.unlock_type.value,
                notified=len(outcome.notified),
                tokens_issued=len(outcome.grants),
            )
        return outcome

    def issue_grants(self, config: LegacyAccessConfig, grants: list[UnlockGrant], owner_name: str) -> None:
        for grant in grants:
            self.repository.save_unlock_token(grant.token)
            self.dispatcher.send_unlock_notification(
                grant.beneficiary, owner_name, grant.token, config.trigger
            )

    def trigger_unlock(self, owner_id: str, unlock_type: UnlockType) -> UnlockOutcome:
        """
        Fire the owner's unlock now. No-op if it has already fired.

        Side Effects:
            - Writes the config, unlock tokens and index entries; sends emails
        """
        now = self.now_fn()
        config, outcome = self.repository.update_config(
            owner_id, lambda c: self.apply_unlock(c, unlock_type, now)
        )
        if not outcome.fired:
            logger.info("Unlock for user %s already triggered; nothing to do", owner_id)
            return outcome
        return self.complete(config, outcome)

    def validate_unlock_token(self, token_id: str) -> UnlockAccess:
        """
        Check an unlock token and record its first use.

        Raises:
            NotFoundError: Unknown token, or its beneficiary is gone, no longer
                verified or holds a newer token
            ExpiredError: Token past expiresAt

        Side Effects:
            - Sets usedAt on the first successful validation only
        """
        token = self.repository.get_unlock_token(token_id)
        if token is None:
            raise NotFoundError("Unlock token not found")

        now = self.now_fn()
        if token.is_expired(now):
            raise ExpiredError("Unlock token has expired")

        config = self.repository.find_config(token.user_id)
        beneficiary = config.find_beneficiary(token.beneficiary_id) if config else None
        if (
            beneficiary is None
            or beneficiary.status != BeneficiaryStatus.VERIFIED
            or beneficiary.unlock_token_id != token.token_id
        ):
            raise NotFoundError("Unlock token not found")

        first_use = token.used_at is None
        if first_use:
            token = self.repository.mark_unlock_token_used(token_id, now) or token
            log_event("legacy.unlock_token_first_use", user_id=token.user_id, beneficiary_id=beneficiary.id)

        return UnlockAccess(
            owner_id=token.user_id,
            beneficiary=beneficiary,
            personal_message=beneficiary.personal_message,
            unlock_type=token.unlock_type,
            folder_permissions={k: v.value for k, v in token.folder_permissions.items()},
            first_used_at=token.used_at,
        )
