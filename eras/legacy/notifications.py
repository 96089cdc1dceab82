"""
Notification Dispatcher - builds legacy access emails and hands them to the email client.

Each method picks the template, fills its variables and sends. Sending never
raises: a failed send is logged, counted and reported back as an EmailResult,
because the state transition that caused it has already been committed.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from eras.config import FRONTEND_URL
from eras.email.client import EmailClient, EmailMessage, EmailResult
from eras.legacy.models import (
    Beneficiary,
    NotificationContext,
    OwnerProfile,
    Trigger,
    TriggerType,
    UnlockToken,
    utc_now,
)
from eras.observability.logging import get_logger
from eras.observability.telemetry import counter

logger = get_logger(__name__)

TEMPLATE_VERIFICATION = "verification"
TEMPLATE_REMINDER = "verification-reminder"
TEMPLATE_CONFIRMATION = "verification-confirmation"
TEMPLATE_UNLOCK = "unlock-notification"
TEMPLATE_INACTIVITY_WARNING = "inactivity-warning"

DEFAULT_OWNER_NAME = "An Eras user"


def format_date(value: datetime) -> str:
    """Long US date, e.g. 'March 5, 2026'."""
    return f"{value:%B} {value.day}, {value.year}"


def owner_display_name(profile: OwnerProfile | None) -> str:
    if profile is None:
        return DEFAULT_OWNER_NAME
    if profile.display_name:
        return profile.display_name
    return profile.email.split("@")[0] or DEFAULT_OWNER_NAME


class NotificationDispatcher:
    """Builds the payload for every legacy access email."""

    def __init__(
        self,
        email_client: EmailClient,
        frontend_url: str = FRONTEND_URL,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.email_client = email_client
        self.frontend_url = frontend_url.rstrip("/")
        self.now_fn = now_fn

    # URLs --------------------------------------------------------------

    def verification_url(self, token: str) -> str:
        return f"{self.frontend_url}/verify-beneficiary?token={token}"

    def access_url(self, token_id: str) -> str:
        return f"{self.frontend_url}/legacy-vault/access?token={token_id}"

    def cancel_url(self, cancel_token: str) -> str:
        return f"{self.frontend_url}/cancel-unlock?token={cancel_token}"

    # Emails ------------------------------------------------------------

    def send_verification(
        self,
        beneficiary: Beneficiary,
        owner_name: str,
        context: NotificationContext,
        expiration_days: int | None,
    ) -> EmailResult:
        """
        Ask the beneficiary to confirm their role.

        expiration_days=None means the token never expires (unlock-time notices).
        """
        if not beneficiary.verification_token:
            logger.error("Beneficiary %s has no verification token to send", beneficiary.id)
            return EmailResult(success=False, error="No verification token")

        now = self.now_fn()
        variables = {
            "beneficiaryName": beneficiary.name,
            "beneficiaryEmail": beneficiary.email,
            "userName": owner_name,
            "personalMessage": beneficiary.personal_message or "",
            "verificationUrl": self.verification_url(beneficiary.verification_token),
            "designatedDate": format_date(beneficiary.added_at),
            "notificationContext": context.value,
            "expirationDays": expiration_days,
            "expiresNever": expiration_days is None,
        }

        if context == NotificationContext.UNLOCK:
            subject = "Legacy Vault Unlocked - Verification Required - Eras"
            variables["unlockDate"] = format_date(now)
        else:
            subject = "You've Been Designated as a Legacy Beneficiary - Eras"

        return self._send(
            EmailMessage(
                to=beneficiary.email,
                subject=subject,
                template=TEMPLATE_VERIFICATION,
                variables=variables,
            ),
            beneficiary_id=beneficiary.id,
        )

    def send_reminder(
        self,
        beneficiary: Beneficiary,
        owner_name: str,
        reminder_number: int,
        days_since: int,
        is_final: bool,
    ) -> EmailResult:
        if not beneficiary.verification_token:
            return EmailResult(success=False, error="No verification token")

        return self._send(
            EmailMessage(
                to=beneficiary.email,
                subject="Reminder: Verify Your Legacy Beneficiary Role - Eras",
                template=TEMPLATE_REMINDER,
                variables={
                    "beneficiaryName": beneficiary.name,
                    "beneficiaryEmail": beneficiary.email,
                    "userName": owner_name,
                    "reminderNumber": reminder_number,
                    "daysSinceUnlock": days_since,
                    "verificationUrl": self.verification_url(beneficiary.verification_token),
                    "requestNewUrl": f"{self.frontend_url}/request-verification",
                    "personalMessage": beneficiary.personal_message or "",
                    "isFinalReminder": is_final,
                },
            ),
            beneficiary_id=beneficiary.id,
        )

    def send_confirmation(self, beneficiary: Beneficiary, owner_name: str) -> EmailResult:
        verified_at = beneficiary.verified_at or self.now_fn()
        return self._send(
            EmailMessage(
                to=beneficiary.email,
                subject="Beneficiary Role Confirmed - Eras",
                template=TEMPLATE_CONFIRMATION,
                variables={
                    "beneficiaryName": beneficiary.name,
                    "beneficiaryEmail": beneficiary.email,
                    "userName": owner_name,
                    "homeUrl": self.frontend_url,
                    "verifiedDate": format_date(verified_at),
                },
            ),
            beneficiary_id=beneficiary.id,
        )

    def send_unlock_notification(
        self,
        beneficiary: Beneficiary,
        owner_name: str,
        token: UnlockToken,
        trigger: Trigger,
    ) -> EmailResult:
        folders = [
            {"folderId": folder_id, "permission": permission.value}
            for folder_id, permission in sorted(token.folder_permissions.items())
        ]
        inactivity_days = (
            trigger.inactivity_months * 30
            if trigger.type == TriggerType.INACTIVITY and trigger.inactivity_months
            else 0
        )

        return self._send(
            EmailMessage(
                to=beneficiary.email,
                subject="Legacy Vault Unlocked - Eras",
                template=TEMPLATE_UNLOCK,
                variables={
                    "ownerName": owner_name,
                    "beneficiaryName": beneficiary.name,
                    "beneficiaryEmail": beneficiary.email,
                    "unlockType": token.unlock_type.value,
                    "inactivityDays": inactivity_days,
                    "folderCount": len(folders),
                    "folders": folders,
                    "personalMessage": beneficiary.personal_message or "",
                    "accessUrl": self.access_url(token.token_id),
                    "unlockDate": format_date(token.created_at),
                },
            ),
            beneficiary_id=beneficiary.id,
        )

    def send_inactivity_warning(
        self,
        owner: OwnerProfile,
        trigger: Trigger,
        verified_emails: list[str],
        cancel_token: str,
    ) -> EmailResult:
        """Warn the owner that their grace period has started."""
        now = self.now_fn()
        days_inactive = int((now - trigger.last_activity_at).total_seconds() // 86400)

        return self._send(
            EmailMessage(
                to=owner.email,
                subject="Account Inactivity Warning - Eras",
                template=TEMPLATE_INACTIVITY_WARNING,
                variables={
                    "userName": owner_display_name(owner),
                    "daysSinceLastLogin": days_inactive,
                    "daysUntilInactive": trigger.grace_period_days,
                    "lastLoginDate": format_date(trigger.last_activity_at),
                    "unlockDate": format_date(trigger.unlock_scheduled_at or now),
                    "hasBeneficiaries": bool(verified_emails),
                    "beneficiaries": verified_emails,
                    "loginUrl": f"{self.frontend_url}/login",
                    "settingsUrl": f"{self.frontend_url}/settings/legacy-access",
                    "cancelUrl": self.cancel_url(cancel_token),
                },
            ),
            owner_id=owner.user_id,
        )

    def _send(self, message: EmailMessage, **ids: str) -> EmailResult:
        try:
            result = self.email_client.send(message)
        except Exception as e:
            logger.error("Email client raised while sending %s %s: %s", message.template, ids, e)
            result = EmailResult(success=False, error=str(e))

        if result.success:
            counter(f"legacy.email.{message.template}.sent")
            logger.info("Sent %s email %s", message.template, ids)
        else:
            counter(f"legacy.email.{message.template}.failed")
            logger.warning("Failed to send %s email %s: %s", message.template, ids, result.error)
        return result
