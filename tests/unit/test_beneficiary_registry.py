"""Unit tests for the beneficiary designation lifecycle

Tests cover:
- Self-designation and duplicate email rules
- Immediate vs deferred notification
- Token expiry boundaries
- Manual notify, resend and email change
- Revocation (kept for audit, idempotent)
- Verification through the token index, backfilled by the inactivity sweep
- Email change after the unlock moves access to the new address
"""

from __future__ import annotations

import pytest

from eras.legacy.errors import (
    DuplicateBeneficiaryError,
    ExpiredTokenError,
    InvalidStateError,
    NotFoundError,
    SelfDesignationError,
)
from eras.legacy.models import (
    BeneficiaryStatus,
    FolderPermission,
    NotificationContext,
    NotificationTiming,
    UnlockType,
)
from eras.legacy.notifications import TEMPLATE_CONFIRMATION, TEMPLATE_UNLOCK, TEMPLATE_VERIFICATION
from eras.observability.telemetry import get_counter


class TestDesignationRules:
    def test_owner_cannot_designate_themselves(self, service, owner_id, make_beneficiary):
        with pytest.raises(SelfDesignationError):
            service.add_beneficiary(owner_id, make_beneficiary("Owner@Example.com"), owner_email="owner@example.com")

        assert service.get_config(owner_id).beneficiaries == []

    def test_self_check_falls_back_to_stored_profile(self, service, owner_id, make_beneficiary):
        """Without a request email the remembered owner profile is used."""
        with pytest.raises(SelfDesignationError):
            service.add_beneficiary(owner_id, make_beneficiary("  OWNER@example.com "))

        assert service.get_config(owner_id).beneficiaries == []

    def test_duplicate_email_is_case_insensitive(self, service, owner_id, make_beneficiary):
        service.add_beneficiary(owner_id, make_beneficiary("Bob@X.com"))

        with pytest.raises(DuplicateBeneficiaryError):
            service.add_beneficiary(owner_id, make_beneficiary("bob@x.com", name="Robert"))

        assert len(service.get_config(owner_id).beneficiaries) == 1

    def test_revoked_email_can_be_designated_again(self, service, owner_id, make_beneficiary):
        first = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary
        service.remove_beneficiary(owner_id, first.id)

        second = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary

        config = service.get_config(owner_id)
        assert [b.status for b in config.beneficiaries] == [
            BeneficiaryStatus.REVOKED,
            BeneficiaryStatus.PENDING,
        ]
        assert second.id != first.id


class TestAddBeneficiary:
    def test_deferred_beneficiary_is_not_contacted(self, service, owner_id, email, make_beneficiary):
        change = service.add_beneficiary(
            owner_id, make_beneficiary(timing=NotificationTiming.DEFERRED)
        )

        beneficiary = change.beneficiary
        assert beneficiary.status == BeneficiaryStatus.PENDING_UNLOCK
        assert beneficiary.verification_token is None
        assert beneficiary.notification_sent_at is None
        assert change.email_sent is None
        assert email.messages == []

    def test_immediate_beneficiary_gets_30_day_token(self, service, owner_id, email, clock, make_beneficiary):
        change = service.add_beneficiary(
            owner_id,
            make_beneficiary(
                personal_message="Look after the photos",
                folder_permissions={"folder-1": FolderPermission.VIEW},
            ),
        )

        beneficiary = change.beneficiary
        assert beneficiary.status == BeneficiaryStatus.PENDING
        assert beneficiary.notification_context == NotificationContext.IMMEDIATE
        assert (beneficiary.token_expires_at - clock()).days == 30
        assert change.email_sent is True

        message = email.last(TEMPLATE_VERIFICATION)
        assert message.to == "bob@x.com"
        assert message.variables["expirationDays"] == 30
        assert message.variables["personalMessage"] == "Look after the photos"
        assert message.variables["userName"] == "Alice Owner"
        assert message.variables["verificationUrl"].endswith(beneficiary.verification_token)

    def test_add_records_trigger_snapshot_and_email_history(self, service, owner_id, clock, make_beneficiary):
        beneficiary = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary

        assert beneficiary.added_with_trigger.type.value == "inactivity"
        assert beneficiary.added_with_trigger.inactivity_months == 6
        assert [entry.email for entry in beneficiary.email_history] == ["bob@x.com"]
        assert beneficiary.added_at == clock()

    def test_email_failure_keeps_the_designation(self, service, owner_id, email, make_beneficiary):
        email.fail = True

        change = service.add_beneficiary(owner_id, make_beneficiary())

        assert change.email_sent is False
        stored = service.get_config(owner_id).find_beneficiary(change.beneficiary.id)
        assert stored.status == BeneficiaryStatus.PENDING
        assert get_counter("legacy.email.verification.failed") == 1


class TestTokenExpiry:
    def test_verify_on_day_29_succeeds(self, service, owner_id, clock, make_beneficiary):
        token = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary.verification_token
        clock.advance(days=29)

        verified = service.verify_beneficiary(token)

        assert verified.status == BeneficiaryStatus.VERIFIED
        assert verified.verified_at == clock()
        assert verified.verification_token is None
        assert verified.token_expires_at is None

    def test_verify_on_day_31_fails(self, service, owner_id, clock, make_beneficiary):
        change = service.add_beneficiary(owner_id, make_beneficiary())
        clock.advance(days=31)

        with pytest.raises(ExpiredTokenError):
            service.verify_beneficiary(change.beneficiary.verification_token)

        stored = service.get_config(owner_id).find_beneficiary(change.beneficiary.id)
        assert stored.status == BeneficiaryStatus.PENDING

    def test_verification_sends_confirmation(self, service, owner_id, email, make_beneficiary):
        token = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary.verification_token

        service.verify_beneficiary(token)

        assert email.last(TEMPLATE_CONFIRMATION).to == "bob@x.com"

    def test_token_cannot_be_used_twice(self, service, owner_id, make_beneficiary):
        token = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary.verification_token
        service.verify_beneficiary(token)

        with pytest.raises(NotFoundError):
            service.verify_beneficiary(token)

    def test_unknown_token(self, service):
        with pytest.raises(NotFoundError):
            service.verify_beneficiary("not-a-real-token")


class TestManualNotification:
    def test_notify_deferred_beneficiary(self, service, owner_id, email, clock, make_beneficiary):
        beneficiary = service.add_beneficiary(
            owner_id, make_beneficiary(timing=NotificationTiming.DEFERRED)
        ).beneficiary

        change = service.send_beneficiary_notification(owner_id, beneficiary.id)

        notified = change.beneficiary
        assert notified.status == BeneficiaryStatus.PENDING
        assert notified.notification_context == NotificationContext.MANUAL
        assert notified.notification_timing == NotificationTiming.IMMEDIATE
        assert (notified.token_expires_at - clock()).days == 14
        assert email.last(TEMPLATE_VERIFICATION).variables["expirationDays"] == 14

    def test_notify_requires_pending_unlock(self, service, owner_id, make_beneficiary):
        beneficiary = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary

        with pytest.raises(InvalidStateError):
            service.send_beneficiary_notification(owner_id, beneficiary.id)

    def test_notify_unknown_beneficiary(self, service, owner_id):
        with pytest.raises(NotFoundError):
            service.send_beneficiary_notification(owner_id, "ben_missing")


class TestResend:
    def test_resend_replaces_token(self, service, owner_id, email, clock, make_beneficiary):
        original = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary
        clock.advance(days=20)

        resent = service.resend_verification_email(owner_id, original.id).beneficiary

        assert resent.verification_token != original.verification_token
        assert resent.notification_context == NotificationContext.MANUAL
        assert (resent.token_expires_at - clock()).days == 14
        assert len(email.with_template(TEMPLATE_VERIFICATION)) == 2

        with pytest.raises(NotFoundError):
            service.verify_beneficiary(original.verification_token)
        assert service.verify_beneficiary(resent.verification_token).status == BeneficiaryStatus.VERIFIED

    def test_resend_keeps_unlock_tokens_non_expiring(self, service, owner_id, email, make_beneficiary):
        beneficiary = service.add_beneficiary(
            owner_id, make_beneficiary(timing=NotificationTiming.DEFERRED)
        ).beneficiary
        service.trigger_unlock(owner_id, UnlockType.USER_TRIGGERED)

        resent = service.resend_verification_email(owner_id, beneficiary.id).beneficiary

        assert resent.notification_context == NotificationContext.UNLOCK
        assert resent.token_expires_at is None
        assert email.last(TEMPLATE_VERIFICATION).variables["expiresNever"] is True

    def test_resend_requires_pending(self, service, owner_id, make_beneficiary):
        beneficiary = service.add_beneficiary(
            owner_id, make_beneficiary(timing=NotificationTiming.DEFERRED)
        ).beneficiary

        with pytest.raises(InvalidStateError):
            service.resend_verification_email(owner_id, beneficiary.id)


class TestUpdateEmail:
    def test_email_change_restarts_verification(self, service, owner_id, add_verified, email):
        bob = add_verified()

        change = service.update_beneficiary_email(owner_id, bob.id, "Robert@Y.com")

        updated = change.beneficiary
        assert updated.email == "robert@y.com"
        assert updated.status == BeneficiaryStatus.PENDING
        assert updated.verified_at is None
        assert [entry.email for entry in updated.email_history] == ["bob@x.com", "robert@y.com"]
        assert email.last(TEMPLATE_VERIFICATION).to == "robert@y.com"

    def test_email_change_rejects_duplicates(self, service, owner_id, make_beneficiary):
        bob = service.add_beneficiary(owner_id, make_beneficiary("bob@x.com")).beneficiary
        service.add_beneficiary(owner_id, make_beneficiary("carol@x.com", name="Carol"))

        with pytest.raises(DuplicateBeneficiaryError):
            service.update_beneficiary_email(owner_id, bob.id, "CAROL@x.com")

    def test_email_change_rejects_owner_email(self, service, owner_id, make_beneficiary):
        bob = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary

        with pytest.raises(SelfDesignationError):
            service.update_beneficiary_email(owner_id, bob.id, "owner@example.com")

    def test_email_change_on_revoked_beneficiary(self, service, owner_id, make_beneficiary):
        bob = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary
        service.remove_beneficiary(owner_id, bob.id)

        with pytest.raises(InvalidStateError):
            service.update_beneficiary_email(owner_id, bob.id, "bob@new.com")


class TestRemoveBeneficiary:
    def test_remove_keeps_revoked_record(self, service, owner_id, clock, make_beneficiary):
        bob = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary

        revoked = service.remove_beneficiary(owner_id, bob.id)

        assert revoked.status == BeneficiaryStatus.REVOKED
        assert revoked.revoked_at == clock()
        assert revoked.verification_token is None
        assert service.get_config(owner_id).find_beneficiary(bob.id) is not None

        with pytest.raises(NotFoundError):
            service.verify_beneficiary(bob.verification_token)

    def test_remove_is_idempotent(self, service, owner_id, clock, make_beneficiary):
        bob = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary
        first = service.remove_beneficiary(owner_id, bob.id)
        clock.advance(days=1)

        second = service.remove_beneficiary(owner_id, bob.id)

        assert second.revoked_at == first.revoked_at

    def test_remove_unknown_beneficiary(self, service, owner_id):
        with pytest.raises(NotFoundError):
            service.remove_beneficiary(owner_id, "ben_missing")


class TestVerificationLookup:
    def test_unknown_tokens_only_read_the_index(self, service, store, monkeypatch):
        prefix_reads = []
        original = store.get_by_prefix
        monkeypatch.setattr(store, "get_by_prefix", lambda prefix: prefix_reads.append(prefix) or original(prefix))

        for i in range(5):
            with pytest.raises(NotFoundError):
                service.verify_beneficiary(f"garbage-{i}")

        assert prefix_reads == []

    def test_unindexed_token_is_indexed_by_the_inactivity_sweep(self, service, owner_id, make_beneficiary):
        """Tokens issued before the index existed become usable after the next sweep."""
        token = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary.verification_token
        service.repository.delete_token_index(token)

        with pytest.raises(NotFoundError):
            service.verify_beneficiary(token)

        service.check_inactivity_triggers()
        assert get_counter("legacy.token_index.backfilled") == 1

        verified = service.verify_beneficiary(token)

        assert verified.status == BeneficiaryStatus.VERIFIED
        assert service.repository.get_token_index(token) is None

    def test_verify_after_unlock_grants_access(self, service, owner_id, email, make_beneficiary):
        """A pending beneficiary verifying after the unlock fired gets access immediately."""
        bob = service.add_beneficiary(owner_id, make_beneficiary()).beneficiary
        service.trigger_unlock(owner_id, UnlockType.USER_TRIGGERED)

        service.verify_beneficiary(bob.verification_token)

        stored = service.get_config(owner_id).find_beneficiary(bob.id)
        assert stored.unlock_token_id is not None
        token = service.repository.get_unlock_token(stored.unlock_token_id)
        assert token.unlock_type == UnlockType.GRACE_PERIOD_EXPIRED
        assert email.last(TEMPLATE_UNLOCK).to == "bob@x.com"


class TestEmailChangeAfterUnlock:
    def test_access_moves_to_the_new_address(self, service, owner_id, add_verified, email):
        bob = add_verified("bob@typo.com")
        old_token_id = service.trigger_unlock(owner_id, UnlockType.MANUAL_DATE).grants[0].token.token_id

        change = service.update_beneficiary_email(owner_id, bob.id, "bob@x.com")

        assert change.beneficiary.unlock_token_id is None
        assert service.repository.get_unlock_token(old_token_id) is None
        with pytest.raises(NotFoundError):
            service.validate_unlock_token(old_token_id)

        service.verify_beneficiary(email.token_from(TEMPLATE_VERIFICATION))

        assert [m.to for m in email.with_template(TEMPLATE_UNLOCK)] == ["bob@typo.com", "bob@x.com"]
        new_token_id = service.get_config(owner_id).find_beneficiary(bob.id).unlock_token_id
        assert new_token_id not in (None, old_token_id)
        assert service.validate_unlock_token(new_token_id).beneficiary.email == "bob@x.com"

    def test_unverified_holder_cannot_use_a_leftover_token(self, service, owner_id, add_verified):
        bob = add_verified("bob@typo.com")
        old_token = service.trigger_unlock(owner_id, UnlockType.USER_TRIGGERED).grants[0].token
        service.update_beneficiary_email(owner_id, bob.id, "bob@x.com")
        service.repository.save_unlock_token(old_token)

        with pytest.raises(NotFoundError):
            service.validate_unlock_token(old_token.token_id)
