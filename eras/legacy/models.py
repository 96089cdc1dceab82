"""
Legacy access domain models.

Records are persisted as camelCase JSON with epoch-millisecond timestamps, the
shape the web client and existing stored data use. Unset optional fields are
omitted from the stored JSON entirely; an omitted tokenExpiresAt means the
verification token never expires.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Self

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def to_epoch_ms(value: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds."""
    return int(value.timestamp() * 1000)


def parse_timestamp(value: Any) -> Any:
    """Accept epoch milliseconds, ISO strings or datetimes; always return aware UTC."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value / 1000, UTC)
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


EpochMillis = Annotated[
    datetime,
    BeforeValidator(parse_timestamp),
    PlainSerializer(to_epoch_ms, return_type=int, when_used="json"),
]


class BeneficiaryStatus(str, Enum):
    """Where a beneficiary is in the designation lifecycle."""

    PENDING_UNLOCK = "pending_unlock"  # Registered, notification deferred until unlock
    PENDING = "pending"  # Notified, verification token outstanding
    VERIFIED = "verified"  # Confirmed their email and accepted the role
    REJECTED = "rejected"  # Declined (reserved)
    REVOKED = "revoked"  # Removed by the owner (terminal, kept for audit)


class NotificationTiming(str, Enum):
    IMMEDIATE = "immediate"
    DEFERRED = "deferred"


class NotificationContext(str, Enum):
    """Why the verification email was sent; decides the token expiry policy."""

    IMMEDIATE = "immediate"  # At designation time, 30-day token
    MANUAL = "manual"  # Owner-initiated notify/resend, 14-day token
    UNLOCK = "unlock"  # At unlock time, token never expires


class TriggerType(str, Enum):
    INACTIVITY = "inactivity"
    DATE = "date"


class UnlockType(str, Enum):
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    MANUAL_DATE = "manual_date"
    USER_TRIGGERED = "user_triggered"


class FolderPermission(str, Enum):
    VIEW = "view"
    EDIT = "edit"


class RecordModel(BaseModel):
    """Base for models stored in the key-value store."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=False,
    )

    def to_record(self) -> dict[str, Any]:
        """Convert to the stored JSON shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> Self:
        """Create from the stored JSON shape."""
        return cls.model_validate(data)


class EmailHistoryEntry(RecordModel):
    email: str
    updated_at: EpochMillis


class TriggerSnapshot(RecordModel):
    """Trigger definition captured when a beneficiary was added, for audit."""

    type: TriggerType
    inactivity_months: int | None = None
    manual_unlock_date: EpochMillis | None = None
    captured_at: EpochMillis


class Beneficiary(RecordModel):
    """A person designated to receive access to the owner's vault."""

    id: str
    name: str
    email: str
    phone: str | None = None
    personal_message: str | None = None
    status: BeneficiaryStatus
    verification_token: str | None = None
    token_expires_at: EpochMillis | None = None
    verified_at: EpochMillis | None = None
    added_at: EpochMillis
    rejected_at: EpochMillis | None = None
    revoked_at: EpochMillis | None = None
    email_history: list[EmailHistoryEntry] = Field(default_factory=list)
    folder_permissions: dict[str, FolderPermission] = Field(default_factory=dict)
    added_with_trigger: TriggerSnapshot | None = None
    notification_timing: NotificationTiming = NotificationTiming.DEFERRED
    notification_sent_at: EpochMillis | None = None
    notification_context: NotificationContext | None = None

    # Reminder tier counter for unlock-time notifications
    reminders_sent: int = 0
    last_reminder_sent_at: EpochMillis | None = None
    # UnlockToken granted to this beneficiary, if any
    unlock_token_id: str | None = None

    @property
    def is_active(self) -> bool:
        """Counts toward the one-beneficiary-per-email rule."""
        return self.status != BeneficiaryStatus.REVOKED

    def token_expired(self, now: datetime) -> bool:
        return self.token_expires_at is not None and self.token_expires_at < now

    def clear_verification_token(self) -> str | None:
        """Drop the token and its expiry; return the old token for index cleanup."""
        token = self.verification_token
        self.verification_token = None
        self.token_expires_at = None
        return token


class Trigger(RecordModel):
    """What makes the vault unlock, plus the timers of the current episode."""

    type: TriggerType = TriggerType.INACTIVITY
    inactivity_months: int | None = None
    manual_unlock_date: EpochMillis | None = None
    grace_period_days: int = 30
    last_activity_at: EpochMillis
    unlock_scheduled_at: EpochMillis | None = None
    unlock_canceled_at: EpochMillis | None = None
    warning_email_sent_at: EpochMillis | None = None
    unlock_triggered_at: EpochMillis | None = None
    # Cancel link of the grace period in progress; earlier links stop working
    cancel_token: str | None = None

    def snapshot(self, now: datetime) -> TriggerSnapshot:
        return TriggerSnapshot(
            type=self.type,
            inactivity_months=self.inactivity_months,
            manual_unlock_date=self.manual_unlock_date,
            captured_at=now,
        )

    def clear_grace_period(self) -> str | None:
        """End the current grace period; return its cancel token for cleanup."""
        cancel_token = self.cancel_token
        self.unlock_scheduled_at = None
        self.unlock_canceled_at = None
        self.warning_email_sent_at = None
        self.cancel_token = None
        return cancel_token


class SecurityFlags(RecordModel):
    """Always-on guarantees; not user-configurable."""

    enabled: bool = True
    encrypted_at_rest: bool = True
    require_email_verification: bool = True
    access_logged: bool = True


class LegacyAccessConfig(RecordModel):
    """One per owner account."""

    user_id: str
    beneficiaries: list[Beneficiary] = Field(default_factory=list)
    trigger: Trigger
    security: SecurityFlags = Field(default_factory=SecurityFlags)
    created_at: EpochMillis
    updated_at: EpochMillis

    def find_beneficiary(self, beneficiary_id: str) -> Beneficiary | None:
        return next((b for b in self.beneficiaries if b.id == beneficiary_id), None)

    def active_with_email(self, email: str, exclude_id: str | None = None) -> Beneficiary | None:
        email = email.lower()
        return next(
            (
                b
                for b in self.beneficiaries
                if b.is_active and b.email.lower() == email and b.id != exclude_id
            ),
            None,
        )

    def with_status(self, status: BeneficiaryStatus) -> list[Beneficiary]:
        return [b for b in self.beneficiaries if b.status == status]

    @property
    def has_verified_beneficiaries(self) -> bool:
        return any(b.status == BeneficiaryStatus.VERIFIED for b in self.beneficiaries)


class UnlockToken(RecordModel):
    """Durable access grant for one verified beneficiary."""

    token_id: str
    user_id: str
    beneficiary_id: str
    unlock_type: UnlockType
    created_at: EpochMillis
    expires_at: EpochMillis
    used_at: EpochMillis | None = None
    folder_permissions: dict[str, FolderPermission] = Field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class CancelUnlockRecord(RecordModel):
    user_id: str
    created_at: EpochMillis


class VerificationTokenEntry(RecordModel):
    user_id: str
    beneficiary_id: str


class OwnerProfile(RecordModel):
    user_id: str
    email: str
    display_name: str | None = None
    updated_at: EpochMillis
