"""
Repository for legacy access records.

Owns the key layout in the key-value store, the "create default config on
first access" rule and the compare-and-swap loop used for every config write.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from eras.config import CONFIG_WRITE_MAX_ATTEMPTS, DEFAULT_INACTIVITY_MONTHS, GRACE_PERIOD_DAYS
from eras.legacy.errors import ConcurrentModificationError
from eras.legacy.models import (
    BeneficiaryStatus,
    CancelUnlockRecord,
    LegacyAccessConfig,
    OwnerProfile,
    Trigger,
    TriggerType,
    UnlockToken,
    VerificationTokenEntry,
    utc_now,
)
from eras.observability.logging import get_logger
from eras.observability.telemetry import counter
from eras.storage.kv_store import KeyValueStore

logger = get_logger(__name__)

T = TypeVar("T")

CONFIG_PREFIX = "legacy_access_"
UNLOCK_TOKEN_PREFIX = "unlock_token_"
CANCEL_UNLOCK_PREFIX = "cancel_unlock_"
VERIFICATION_TOKEN_PREFIX = "verification_token_"
OWNER_PROFILE_PREFIX = "owner_profile_"


def config_key(owner_id: str) -> str:
    return f"{CONFIG_PREFIX}{owner_id}"


def default_config(owner_id: str, now: datetime) -> LegacyAccessConfig:
    """Config for an owner who has never opened legacy access settings."""
    return LegacyAccessConfig(
        user_id=owner_id,
        beneficiaries=[],
        trigger=Trigger(
            type=TriggerType.INACTIVITY,
            inactivity_months=DEFAULT_INACTIVITY_MONTHS,
            grace_period_days=GRACE_PERIOD_DAYS,
            last_activity_at=now,
        ),
        created_at=now,
        updated_at=now,
    )


class LegacyAccessRepository:
    """
    Persistence for configs, unlock tokens, cancel links, the verification
    token index and owner profiles.
    """

    def __init__(
        self,
        store: KeyValueStore,
        now_fn: Callable[[], datetime] = utc_now,
        max_attempts: int = CONFIG_WRITE_MAX_ATTEMPTS,
    ):
        self.store = store
        self.now_fn = now_fn
        self.max_attempts = max_attempts

    # ------------------------------------------------------------------
    # Configs
    # ------------------------------------------------------------------

    def get_config(self, owner_id: str) -> LegacyAccessConfig:
        """
        Load the owner's config, creating and persisting the default on first access.

        Side Effects:
            - Writes the default config if none exists
        """
        key = config_key(owner_id)
        for _ in range(self.max_attempts):
            stored = self.store.get_versioned(key)
            if stored is not None:
                return LegacyAccessConfig.from_record(stored[0])

            config = default_config(owner_id, self.now_fn())
            if self.store.compare_and_set(key, config.to_record(), None):
                logger.info("Created default legacy access config for user %s", owner_id)
                return config

        raise ConcurrentModificationError(f"Could not create config for user {owner_id}")

    def find_config(self, owner_id: str) -> LegacyAccessConfig | None:
        """Load the owner's config without creating one."""
        record = self.store.get(config_key(owner_id))
        return LegacyAccessConfig.from_record(record) if record else None

    def list_config_records(self) -> list[dict[str, Any]]:
        """Raw records of every config; parsing is left to the caller so one bad record can be skipped."""
        return self.store.get_by_prefix(CONFIG_PREFIX)

    def update_config(
        self,
        owner_id: str,
        mutate: Callable[[LegacyAccessConfig], T],
    ) -> tuple[LegacyAccessConfig, T]:
        """
        Read-modify-write the owner's config with compare-and-swap.

        mutate changes the config in place and returns a value for the caller.
        It may run more than once when another writer wins a race, so it must
        not send emails or write other records; do that after this returns.

        Returns:
            (committed config, mutate's return value)

        Raises:
            ConcurrentModificationError: If every attempt lost the race
            Any exception raised by mutate (nothing is written)

        Side Effects:
            - Writes the config (creating the default first if needed)
        """
        key = config_key(owner_id)

        for attempt in range(1, self.max_attempts + 1):
            stored = self.store.get_versioned(key)
            if stored is None:
                config = default_config(owner_id, self.now_fn())
                version = None
            else:
                config = LegacyAccessConfig.from_record(stored[0])
                version = stored[1]

            result = mutate(config)
            config.updated_at = self.now_fn()

            if self.store.compare_and_set(key, config.to_record(), version):
                return config, result

            counter("legacy.config.write_conflicts")
            logger.warning(
                "Config for user %s changed during update (attempt %d/%d), retrying",
                owner_id,
                attempt,
                self.max_attempts,
            )

        raise ConcurrentModificationError(f"Config for user {owner_id} kept changing during update")

    def delete_config(self, owner_id: str) -> LegacyAccessConfig | None:
        """
        Remove the owner's config and the records hanging off it (account deletion).

        Side Effects:
            - Deletes the config, outstanding verification index entries,
              the owner's unlock tokens, the active cancel link and owner profile
        """
        config = self.find_config(owner_id)
        if config is None:
            return None

        for beneficiary in config.beneficiaries:
            if beneficiary.verification_token:
                self.delete_token_index(beneficiary.verification_token)
            if beneficiary.unlock_token_id:
                self.delete_unlock_token(beneficiary.unlock_token_id)

        if config.trigger.cancel_token:
            self.delete_cancel_record(config.trigger.cancel_token)
        self.store.delete(config_key(owner_id))
        self.store.delete(f"{OWNER_PROFILE_PREFIX}{owner_id}")
        logger.info("Deleted legacy access config for user %s", owner_id)
        return config

    # ------------------------------------------------------------------
    # Verification token index
    # ------------------------------------------------------------------

    def save_token_index(self, token: str, owner_id: str, beneficiary_id: str) -> None:
        entry = VerificationTokenEntry(user_id=owner_id, beneficiary_id=beneficiary_id)
        self.store.set(f"{VERIFICATION_TOKEN_PREFIX}{token}", entry.to_record())

    def get_token_index(self, token: str) -> VerificationTokenEntry | None:
        record = self.store.get(f"{VERIFICATION_TOKEN_PREFIX}{token}")
        return VerificationTokenEntry.from_record(record) if record else None

    def delete_token_index(self, token: str) -> None:
        self.store.delete(f"{VERIFICATION_TOKEN_PREFIX}{token}")

    def ensure_token_index(self, config: LegacyAccessConfig) -> int:
        """
        Index any outstanding verification token of this config that is missing
        from the index (tokens issued before the index existed). Returns how many
        entries were written.
        """
        written = 0
        for beneficiary in config.beneficiaries:
            token = beneficiary.verification_token
            if token is None or beneficiary.status != BeneficiaryStatus.PENDING:
                continue
            if self.get_token_index(token) is None:
                self.save_token_index(token, config.user_id, beneficiary.id)
                written += 1
        if written:
            counter("legacy.token_index.backfilled", written)
            logger.warning("Indexed %d verification token(s) for user %s", written, config.user_id)
        return written

    # ------------------------------------------------------------------
    # Unlock tokens
    # ------------------------------------------------------------------

    def save_unlock_token(self, token: UnlockToken) -> None:
        self.store.set(f"{UNLOCK_TOKEN_PREFIX}{token.token_id}", token.to_record())
        logger.info(
            "Created unlock token for beneficiary %s of user %s (%s)",
            token.beneficiary_id,
            token.user_id,
            token.unlock_type.value,
        )

    def get_unlock_token(self, token_id: str) -> UnlockToken | None:
        record = self.store.get(f"{UNLOCK_TOKEN_PREFIX}{token_id}")
        return UnlockToken.from_record(record) if record else None

    def delete_unlock_token(self, token_id: str) -> None:
        self.store.delete(f"{UNLOCK_TOKEN_PREFIX}{token_id}")

    def mark_unlock_token_used(self, token_id: str, used_at: datetime) -> UnlockToken | None:
        """
        Set usedAt if it is still unset. Returns the token as stored afterwards.

        Side Effects:
            - Conditional write of the token record
        """
        key = f"{UNLOCK_TOKEN_PREFIX}{token_id}"
        for _ in range(self.max_attempts):
            stored = self.store.get_versioned(key)
            if stored is None:
                return None
            token = UnlockToken.from_record(stored[0])
            if token.used_at is not None:
                return token
            token.used_at = used_at
            if self.store.compare_and_set(key, token.to_record(), stored[1]):
                return token

        raise ConcurrentModificationError(f"Unlock token {token_id} kept changing")

    # ------------------------------------------------------------------
    # Cancel links
    # ------------------------------------------------------------------

    def save_cancel_record(self, cancel_token: str, owner_id: str, created_at: datetime) -> None:
        record = CancelUnlockRecord(user_id=owner_id, created_at=created_at)
        self.store.set(f"{CANCEL_UNLOCK_PREFIX}{cancel_token}", record.to_record())

    def get_cancel_record(self, cancel_token: str) -> CancelUnlockRecord | None:
        record = self.store.get(f"{CANCEL_UNLOCK_PREFIX}{cancel_token}")
        return CancelUnlockRecord.from_record(record) if record else None

    def delete_cancel_record(self, cancel_token: str) -> None:
        self.store.delete(f"{CANCEL_UNLOCK_PREFIX}{cancel_token}")

    # ------------------------------------------------------------------
    # Owner profiles
    # ------------------------------------------------------------------

    def save_owner_profile(self, owner_id: str, email: str, display_name: str | None) -> OwnerProfile:
        profile = OwnerProfile(
            user_id=owner_id,
            email=email.lower(),
            display_name=display_name,
            updated_at=self.now_fn(),
        )
        self.store.set(f"{OWNER_PROFILE_PREFIX}{owner_id}", profile.to_record())
        return profile

    def get_owner_profile(self, owner_id: str) -> OwnerProfile | None:
        record = self.store.get(f"{OWNER_PROFILE_PREFIX}{owner_id}")
        return OwnerProfile.from_record(record) if record else None
