"""
Sweep entry points - the two batch jobs an external scheduler invokes.

- Inactivity/date sweep: runs the Trigger Evaluator over every owner config.
- Reminder sweep: nudges beneficiaries notified at unlock time who have not
  verified yet.

Both are safe to re-run at any time: every transition is guarded by state on
the config. Neither raises to its caller; a failure on one owner is logged,
counted in the summary and the sweep moves on.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from eras.config import REMINDER_SCHEDULE_DAYS
from eras.legacy.errors import ConcurrentModificationError
from eras.legacy.models import (
    Beneficiary,
    BeneficiaryStatus,
    LegacyAccessConfig,
    NotificationContext,
    utc_now,
)
from eras.legacy.notifications import NotificationDispatcher, owner_display_name
from eras.legacy.repository import LegacyAccessRepository
from eras.legacy.triggers import TriggerAction, TriggerEvaluator
from eras.observability.logging import get_logger
from eras.observability.telemetry import counter, log_event, time_block

logger = get_logger(__name__)

FINAL_REMINDER = max(REMINDER_SCHEDULE_DAYS)


class InactivitySweepSummary(BaseModel):
    configs_checked: int = 0
    skipped: int = 0
    warnings_sent: int = 0
    unlocks_triggered: int = 0
    errors: int = 0


class ReminderSweepSummary(BaseModel):
    configs_checked: int = 0
    reminders_sent: int = 0
    errors: int = 0


def due_reminder(days_since: int, reminders_sent: int) -> int | None:
    """
    Reminder tier to send now, if any.

    A tier is due from its day until the next tier's day. Only the tier whose
    window contains days_since can go out, and only if it has not been sent,
    so a daily sweep sends each tier exactly once and a late sweep sends one
    catch-up reminder rather than a burst.

    Side Effects:
        None (pure function)
    """
    schedule = sorted(REMINDER_SCHEDULE_DAYS.items(), key=lambda item: item[1])
    current = None
    for index, (number, day) in enumerate(schedule):
        next_day = schedule[index + 1][1] if index + 1 < len(schedule) else None
        if day <= days_since and (next_day is None or days_since < next_day):
            current = number
            break

    if current is None or current <= reminders_sent:
        return None
    return current


def awaiting_reminder(beneficiary: Beneficiary) -> bool:
    return (
        beneficiary.status == BeneficiaryStatus.PENDING
        and beneficiary.notification_context == NotificationContext.UNLOCK
        and beneficiary.notification_sent_at is not None
    )


@dataclass
class ReminderClaim:
    """A reminder tier recorded on a beneficiary ahead of sending it."""

    beneficiary: Beneficiary
    tier: int
    days_since: int
    previous_count: int
    previous_sent_at: datetime | None


class SweepRunner:
    def __init__(
        self,
        repository: LegacyAccessRepository,
        evaluator: TriggerEvaluator,
        dispatcher: NotificationDispatcher,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.now_fn = now_fn

    def run_inactivity_sweep(self) -> InactivitySweepSummary:
        """
        Evaluate every owner's trigger once.

        Side Effects:
            - Indexes outstanding verification tokens missing from the token index
            - Whatever TriggerEvaluator.evaluate_owner() does per owner
            - Emits legacy.sweep.inactivity event with the summary
        """
        summary = InactivitySweepSummary()

        with time_block("legacy.sweep.inactivity.latency"):
            for record in self.repository.list_config_records():
                summary.configs_checked += 1
                owner_id = _owner_id(record)
                try:
                    config = LegacyAccessConfig.from_record(record)
                    self.repository.ensure_token_index(config)
                    result = self.evaluator.evaluate_owner(config)
                except Exception as e:
                    summary.errors += 1
                    counter("legacy.sweep.inactivity.errors")
                    logger.exception("Inactivity sweep failed for user %s: %s", owner_id, e)
                    continue

                if result.action == TriggerAction.SKIPPED:
                    summary.skipped += 1
                if result.warning_sent:
                    summary.warnings_sent += 1
                if result.unlocked:
                    summary.unlocks_triggered += 1

        log_event("legacy.sweep.inactivity", **summary.model_dump())
        return summary

    def run_reminder_sweep(self) -> ReminderSweepSummary:
        """
        Send due verification reminders to unlock-time beneficiaries.

        Side Effects:
            - Sends reminder emails
            - Advances each beneficiary's reminder counter before sending and
              rolls it back when the send fails
        """
        summary = ReminderSweepSummary()

        with time_block("legacy.sweep.reminders.latency"):
            for record in self.repository.list_config_records():
                summary.configs_checked += 1
                owner_id = _owner_id(record)
                try:
                    config = LegacyAccessConfig.from_record(record)
                    summary.reminders_sent += self._remind_owner(config)
                except Exception as e:
                    summary.errors += 1
                    counter("legacy.sweep.reminders.errors")
                    logger.exception("Reminder sweep failed for user %s: %s", owner_id, e)

        log_event("legacy.sweep.reminders", **summary.model_dump())
        return summary

    def _remind_owner(self, config: LegacyAccessConfig) -> int:
        now = self.now_fn()
        if not _due_reminders(config, now):
            return 0

        # Tiers are recorded before sending; failed sends are released afterwards
        _, claimed = self.repository.update_config(
            config.user_id, lambda c: _claim_reminders(c, now)
        )
        if not claimed:
            return 0

        owner_name = owner_display_name(self.repository.get_owner_profile(config.user_id))
        failed: dict[str, ReminderClaim] = {}
        for claim in claimed:
            result = self.dispatcher.send_reminder(
                claim.beneficiary,
                owner_name,
                reminder_number=claim.tier,
                days_since=claim.days_since,
                is_final=claim.tier == FINAL_REMINDER,
            )
            if not result.success:
                failed[claim.beneficiary.id] = claim

        if failed:
            try:
                self.repository.update_config(config.user_id, lambda c: _release_reminders(c, failed))
            except ConcurrentModificationError:
                counter("legacy.reminders_release_lost", len(failed))
                logger.error(
                    "Could not release %d unsent reminder(s) for user %s; they will not be retried",
                    len(failed),
                    config.user_id,
                )

        sent = len(claimed) - len(failed)
        if sent:
            counter("legacy.reminders_sent", sent)
        return sent


def _due_reminders(config: LegacyAccessConfig, now: datetime) -> list[tuple[Beneficiary, int, int]]:
    due = []
    for beneficiary in config.beneficiaries:
        if not awaiting_reminder(beneficiary):
            continue
        assert beneficiary.notification_sent_at is not None
        days_since = int((now - beneficiary.notification_sent_at).total_seconds() // 86400)
        tier = due_reminder(days_since, beneficiary.reminders_sent)
        if tier is not None:
            due.append((beneficiary, tier, days_since))
    return due


def _claim_reminders(config: LegacyAccessConfig, now: datetime) -> list[ReminderClaim]:
    claims = []
    for beneficiary, tier, days_since in _due_reminders(config, now):
        claims.append(
            ReminderClaim(
                beneficiary=beneficiary,
                tier=tier,
                days_since=days_since,
                previous_count=beneficiary.reminders_sent,
                previous_sent_at=beneficiary.last_reminder_sent_at,
            )
        )
        beneficiary.reminders_sent = tier
        beneficiary.last_reminder_sent_at = now
    return claims


def _release_reminders(config: LegacyAccessConfig, failed: dict[str, ReminderClaim]) -> None:
    for beneficiary in config.beneficiaries:
        claim = failed.get(beneficiary.id)
        if claim is not None and beneficiary.reminders_sent == claim.tier:
            beneficiary.reminders_sent = claim.previous_count
            beneficiary.last_reminder_sent_at = claim.previous_sent_at


def _owner_id(record: Any) -> str:
    return record.get("userId", "<unknown>") if isinstance(record, dict) else "<unknown>"
