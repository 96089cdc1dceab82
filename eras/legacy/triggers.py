"""
Trigger Evaluator - decides, per owner, whether the dead-man's switch should move.

evaluate_trigger() is the pure decision function. TriggerEvaluator applies a
decision through a compare-and-swap config update and then performs the side
effects (cancel link, warning email, unlock emails). The owner-facing trigger
operations (change trigger, record activity, cancel via email link) live here
too because they reset the same timers.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from eras.config import DAYS_PER_MONTH, DEFAULT_INACTIVITY_MONTHS, MAX_INACTIVITY_MONTHS, MIN_INACTIVITY_MONTHS
from eras.legacy.errors import NotFoundError
from eras.legacy.models import (
    BeneficiaryStatus,
    LegacyAccessConfig,
    Trigger,
    TriggerType,
    UnlockType,
    utc_now,
)
from eras.legacy.notifications import NotificationDispatcher
from eras.legacy.repository import LegacyAccessRepository
from eras.legacy.tokens import generate_token
from eras.legacy.unlock import UnlockOrchestrator, UnlockOutcome
from eras.observability.logging import get_logger
from eras.observability.telemetry import counter, log_event

logger = get_logger(__name__)


class TriggerAction(str, Enum):
    NONE = "none"
    SKIPPED = "skipped"  # No verified beneficiaries
    START_GRACE_PERIOD = "start_grace_period"
    FIRE = "fire"


@dataclass
class TriggerDecision:
    action: TriggerAction
    unlock_type: UnlockType | None = None


@dataclass
class EvaluationResult:
    owner_id: str
    action: TriggerAction
    warning_sent: bool = False
    unlocked: bool = False
    outcome: UnlockOutcome | None = None


def inactivity_threshold(trigger: Trigger) -> timedelta:
    months = trigger.inactivity_months or DEFAULT_INACTIVITY_MONTHS
    return timedelta(days=months * DAYS_PER_MONTH)


def evaluate_trigger(config: LegacyAccessConfig, now: datetime) -> TriggerDecision:
    """
    Decide what the sweep should do for this owner right now.

    Side Effects:
        None (pure function)
    """
    if not config.has_verified_beneficiaries:
        return TriggerDecision(TriggerAction.SKIPPED)

    trigger = config.trigger
    if trigger.unlock_triggered_at is not None:
        return TriggerDecision(TriggerAction.NONE)

    if trigger.type == TriggerType.INACTIVITY:
        if trigger.unlock_scheduled_at is None:
            if now - trigger.last_activity_at >= inactivity_threshold(trigger):
                return TriggerDecision(TriggerAction.START_GRACE_PERIOD)
            return TriggerDecision(TriggerAction.NONE)

        if trigger.unlock_scheduled_at <= now and trigger.unlock_canceled_at is None:
            return TriggerDecision(TriggerAction.FIRE, UnlockType.GRACE_PERIOD_EXPIRED)
        return TriggerDecision(TriggerAction.NONE)

    if trigger.manual_unlock_date is not None and now >= trigger.manual_unlock_date:
        return TriggerDecision(TriggerAction.FIRE, UnlockType.MANUAL_DATE)
    return TriggerDecision(TriggerAction.NONE)


def calculate_days_until_unlock(trigger: Trigger, now: datetime) -> int | None:
    """
    Whole days until the vault would unlock, for display. None once it has unlocked.

    Side Effects:
        None (pure function)
    """
    if trigger.unlock_triggered_at is not None:
        return None

    if trigger.type == TriggerType.DATE:
        if trigger.manual_unlock_date is None:
            return None
        target = trigger.manual_unlock_date
    elif trigger.unlock_scheduled_at is not None:
        target = trigger.unlock_scheduled_at
    else:
        target = (
            trigger.last_activity_at
            + inactivity_threshold(trigger)
            + timedelta(days=trigger.grace_period_days)
        )

    return max(0, math.ceil((target - now).total_seconds() / 86400))


class TriggerEvaluator:
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

    # ------------------------------------------------------------------
    # Sweep path
    # ------------------------------------------------------------------

    def evaluate_owner(self, config: LegacyAccessConfig) -> EvaluationResult:
        """
        Run the trigger decision for one owner and apply it.

        config is the copy the sweep read; the decision is re-made against the
        freshly loaded record inside the conditional write.

        Side Effects:
            - Writes the config when the grace period starts or the unlock fires
            - Writes a cancel record and emails the owner when the grace period starts
            - Everything UnlockOrchestrator.complete() does when the unlock fires
        """
        owner_id = config.user_id
        now = self.now_fn()

        decision = evaluate_trigger(config, now)
        if decision.action in (TriggerAction.NONE, TriggerAction.SKIPPED):
            return EvaluationResult(owner_id=owner_id, action=decision.action)

        def apply(current: LegacyAccessConfig) -> tuple[TriggerDecision, UnlockOutcome | None]:
            fresh = evaluate_trigger(current, now)
            if fresh.action == TriggerAction.START_GRACE_PERIOD:
                current.trigger.unlock_scheduled_at = now + timedelta(
                    days=current.trigger.grace_period_days
                )
                current.trigger.warning_email_sent_at = now
                current.trigger.cancel_token = generate_token()
                return fresh, None
            if fresh.action == TriggerAction.FIRE:
                assert fresh.unlock_type is not None
                return fresh, self.orchestrator.apply_unlock(current, fresh.unlock_type, now)
            return fresh, None

        committed, (applied, outcome) = self.repository.update_config(owner_id, apply)
        result = EvaluationResult(owner_id=owner_id, action=applied.action)

        if applied.action == TriggerAction.START_GRACE_PERIOD:
            result.warning_sent = self._start_grace_period_side_effects(committed, now)
        elif applied.action == TriggerAction.FIRE and outcome is not None:
            result.outcome = self.orchestrator.complete(committed, outcome)
            result.unlocked = outcome.fired

        return result

    def _start_grace_period_side_effects(self, config: LegacyAccessConfig, now: datetime) -> bool:
        cancel_token = config.trigger.cancel_token
        assert cancel_token is not None
        self.repository.save_cancel_record(cancel_token, config.user_id, now)

        counter("legacy.grace_periods_started")
        log_event(
            "legacy.grace_period_started",
            user_id=config.user_id,
            unlock_scheduled_at=config.trigger.unlock_scheduled_at.isoformat()
            if config.trigger.unlock_scheduled_at
            else None,
        )

        profile = self.repository.get_owner_profile(config.user_id)
        if profile is None:
            counter("legacy.warning_no_owner_email")
            logger.error("No email on file for user %s; inactivity warning not sent", config.user_id)
            return False

        verified = [b.email for b in config.with_status(BeneficiaryStatus.VERIFIED)]
        result = self.dispatcher.send_inactivity_warning(profile, config.trigger, verified, cancel_token)
        return result.success

    # ------------------------------------------------------------------
    # Owner-facing operations
    # ------------------------------------------------------------------

    def update_inactivity_trigger(self, owner_id: str, months: int) -> LegacyAccessConfig:
        """
        Switch to (or re-time) the inactivity trigger.

        Raises:
            ValueError: months outside the allowed range
        """
        if not MIN_INACTIVITY_MONTHS <= months <= MAX_INACTIVITY_MONTHS:
            raise ValueError(
                f"Inactivity period must be between {MIN_INACTIVITY_MONTHS} and "
                f"{MAX_INACTIVITY_MONTHS} months"
            )

        def apply(config: LegacyAccessConfig) -> str | None:
            stale_cancel_token = _reset_schedule(config.trigger, TriggerType.INACTIVITY)
            config.trigger.inactivity_months = months
            config.trigger.manual_unlock_date = None
            return stale_cancel_token

        config, stale_cancel_token = self.repository.update_config(owner_id, apply)
        self._retire_cancel_link(stale_cancel_token)
        logger.info("User %s set inactivity trigger to %d months", owner_id, months)
        return config

    def update_date_trigger(self, owner_id: str, unlock_date: datetime) -> LegacyAccessConfig:
        """
        Switch to (or move) the fixed-date trigger.

        Raises:
            ValueError: unlock_date is not in the future
        """
        if unlock_date <= self.now_fn():
            raise ValueError("Unlock date must be in the future")

        def apply(config: LegacyAccessConfig) -> str | None:
            stale_cancel_token = _reset_schedule(config.trigger, TriggerType.DATE)
            config.trigger.manual_unlock_date = unlock_date
            config.trigger.inactivity_months = None
            return stale_cancel_token

        config, stale_cancel_token = self.repository.update_config(owner_id, apply)
        self._retire_cancel_link(stale_cancel_token)
        logger.info("User %s set date trigger to %s", owner_id, unlock_date.isoformat())
        return config

    def record_activity(self, owner_id: str) -> LegacyAccessConfig:
        """
        The owner is alive: restart the inactivity clock and abort any grace period.
        """
        now = self.now_fn()

        def apply(config: LegacyAccessConfig) -> tuple[bool, str | None]:
            was_scheduled = config.trigger.unlock_scheduled_at is not None
            config.trigger.last_activity_at = now
            return was_scheduled, config.trigger.clear_grace_period()

        config, (aborted, stale_cancel_token) = self.repository.update_config(owner_id, apply)
        self._retire_cancel_link(stale_cancel_token)
        if aborted:
            counter("legacy.grace_periods_aborted")
            log_event("legacy.grace_period_aborted", user_id=owner_id, reason="activity")
        return config

    def cancel_scheduled_unlock(self, cancel_token: str) -> LegacyAccessConfig:
        """
        Handle the cancel link from the inactivity warning email.

        Raises:
            NotFoundError: Unknown or already used cancel token, or a link from an
                earlier grace period

        Side Effects:
            - Same config reset as record_activity()
            - Consumes the cancel record
        """
        record = self.repository.get_cancel_record(cancel_token)
        if record is None:
            raise NotFoundError("Cancel link not found")

        if self.repository.find_config(record.user_id) is None:
            self.repository.delete_cancel_record(cancel_token)
            raise NotFoundError("Cancel link not found")

        now = self.now_fn()

        def apply(config: LegacyAccessConfig) -> None:
            if config.trigger.cancel_token != cancel_token:
                raise NotFoundError("Cancel link not found")
            config.trigger.last_activity_at = now
            config.trigger.clear_grace_period()

        try:
            config, _ = self.repository.update_config(record.user_id, apply)
        except NotFoundError:
            self.repository.delete_cancel_record(cancel_token)
            raise
        self.repository.delete_cancel_record(cancel_token)

        counter("legacy.grace_periods_aborted")
        log_event("legacy.grace_period_aborted", user_id=record.user_id, reason="cancel_link")
        return config

    def _retire_cancel_link(self, cancel_token: str | None) -> None:
        if cancel_token:
            self.repository.delete_cancel_record(cancel_token)


def _reset_schedule(trigger: Trigger, new_type: TriggerType) -> str | None:
    """Timers belong to the previous trigger definition. Returns the retired cancel token."""
    if trigger.type != new_type:
        trigger.unlock_triggered_at = None
    trigger.type = new_type
    return trigger.clear_grace_period()
