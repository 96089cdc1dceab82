"""
API integration tests for the legacy access endpoints

Runs the real FastAPI app in-process with TestClient. The identity provider
is replaced through dependency overrides and the service is bound to a
per-test database, clock and recording email client.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from eras.api.app import app
from eras.api.middleware import auth as cron_auth
from eras.api.middleware.user_auth import AuthenticatedUser, get_current_user
from eras.legacy.models import UnlockType, to_epoch_ms
from eras.legacy.notifications import TEMPLATE_INACTIVITY_WARNING, TEMPLATE_UNLOCK, TEMPLATE_VERIFICATION
from eras.legacy.service import get_legacy_access_service

INVALID_LINK = "This link is invalid or has expired."


@pytest.fixture
def client(service, owner_id):
    app.dependency_overrides[get_current_user] = lambda: AuthenticatedUser(
        id=owner_id, email="owner@example.com", name="Alice Owner"
    )
    app.dependency_overrides[get_legacy_access_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def cron_key(monkeypatch):
    monkeypatch.setattr(cron_auth.auth, "api_key", "cron-secret")
    return {"Authorization": "Bearer cron-secret"}


def _add(client, email="bob@x.com", timing="immediate", **extra):
    payload = {"name": "Bob", "email": email, "notification_timing": timing, **extra}
    return client.post("/api/legacy-access/beneficiaries", json=payload)


class TestConfigEndpoints:
    def test_get_config_creates_default(self, client):
        response = client.get("/api/legacy-access/config")

        assert response.status_code == 200
        data = response.json()
        assert data["config"]["userId"] == "owner-1"
        assert data["config"]["trigger"]["inactivityMonths"] == 6
        assert data["days_until_unlock"] == 210

    def test_get_config_hides_tokens(self, client):
        _add(client)

        beneficiary = client.get("/api/legacy-access/config").json()["config"]["beneficiaries"][0]

        assert "verificationToken" not in beneficiary
        assert beneficiary["email"] == "bob@x.com"
        assert beneficiary["status"] == "pending"

    def test_get_config_refreshes_owner_profile(self, client, service, owner_id, store):
        store.delete(f"owner_profile_{owner_id}")

        client.get("/api/legacy-access/config")

        assert service.repository.get_owner_profile(owner_id).email == "owner@example.com"

    def test_delete_config(self, client):
        _add(client)

        response = client.delete("/api/legacy-access/config")

        assert response.status_code == 200
        assert response.json() == {"success": True, "deleted": True}


class TestBeneficiaryEndpoints:
    def test_add_immediate_beneficiary(self, client, email):
        response = _add(client, personal_message="Hello", folder_permissions={"folder-1": "view"})

        assert response.status_code == 201
        data = response.json()
        assert data["email_sent"] is True
        assert data["beneficiary"]["status"] == "pending"
        assert data["beneficiary"]["folderPermissions"] == {"folder-1": "view"}
        assert "verificationToken" not in data["beneficiary"]
        assert email.last(TEMPLATE_VERIFICATION).to == "bob@x.com"

    def test_add_self_is_rejected(self, client):
        response = _add(client, email="OWNER@example.com")

        assert response.status_code == 400
        assert response.json()["detail"] == "You cannot add yourself as a beneficiary"

    def test_add_duplicate_is_conflict(self, client):
        _add(client)

        response = _add(client, email="Bob@X.com")

        assert response.status_code == 409

    def test_invalid_email_is_422_without_echo(self, client):
        response = _add(client, email="not-an-email")

        assert response.status_code == 422
        body = response.json()
        assert body["invalid_fields"] == ["email"]
        assert "not-an-email" not in response.text

    def test_remove_unknown_is_404(self, client):
        assert client.delete("/api/legacy-access/beneficiaries/ben_missing").status_code == 404

    def test_remove_beneficiary(self, client):
        beneficiary_id = _add(client).json()["beneficiary"]["id"]

        response = client.delete(f"/api/legacy-access/beneficiaries/{beneficiary_id}")

        assert response.status_code == 200
        assert response.json()["beneficiary"]["status"] == "revoked"

    def test_notify_and_resend(self, client, email):
        beneficiary_id = _add(client, timing="deferred").json()["beneficiary"]["id"]

        notify = client.post(f"/api/legacy-access/beneficiaries/{beneficiary_id}/notify")
        resend = client.post(f"/api/legacy-access/beneficiaries/{beneficiary_id}/resend")
        again = client.post(f"/api/legacy-access/beneficiaries/{beneficiary_id}/notify")

        assert notify.status_code == 200
        assert notify.json()["beneficiary"]["notificationContext"] == "manual"
        assert resend.status_code == 200
        assert again.status_code == 409
        assert len(email.with_template(TEMPLATE_VERIFICATION)) == 2

    def test_update_email(self, client):
        beneficiary_id = _add(client).json()["beneficiary"]["id"]

        response = client.put(
            f"/api/legacy-access/beneficiaries/{beneficiary_id}/email",
            json={"email": "Robert@Y.com"},
        )

        assert response.status_code == 200
        assert response.json()["beneficiary"]["email"] == "robert@y.com"


class TestTriggerEndpoints:
    def test_inactivity_months_validated(self, client):
        assert client.put("/api/legacy-access/trigger/inactivity", json={"months": 0}).status_code == 400

        response = client.put("/api/legacy-access/trigger/inactivity", json={"months": 12})
        assert response.status_code == 200
        assert response.json()["config"]["trigger"]["inactivityMonths"] == 12

    def test_date_trigger_accepts_epoch_millis(self, client, clock):
        unlock_at = clock() + timedelta(days=45)

        response = client.put("/api/legacy-access/trigger/date", json={"unlock_date": to_epoch_ms(unlock_at)})

        assert response.status_code == 200
        data = response.json()
        assert data["config"]["trigger"]["type"] == "date"
        assert data["config"]["trigger"]["manualUnlockDate"] == to_epoch_ms(unlock_at)
        assert data["days_until_unlock"] == 45

    def test_date_in_past_rejected(self, client, clock):
        past = clock() - timedelta(days=1)

        response = client.put("/api/legacy-access/trigger/date", json={"unlock_date": past.isoformat()})

        assert response.status_code == 400

    def test_record_activity(self, client):
        response = client.post("/api/legacy-access/activity")

        assert response.status_code == 200
        assert response.json() == {"success": True, "days_until_unlock": 210}


class TestPublicTokenEndpoints:
    def test_verify(self, client, email):
        _add(client)
        token = email.token_from(TEMPLATE_VERIFICATION)

        response = client.post("/api/legacy-access/verify", json={"token": token})

        assert response.status_code == 200
        assert response.json() == {"success": True, "beneficiary_name": "Bob", "status": "verified"}

    def test_verify_expired_and_unknown_look_the_same(self, client, email, clock):
        _add(client)
        token = email.token_from(TEMPLATE_VERIFICATION)
        clock.advance(days=31)

        expired = client.post("/api/legacy-access/verify", json={"token": token})
        unknown = client.post("/api/legacy-access/verify", json={"token": "nope"})

        assert expired.status_code == unknown.status_code == 400
        assert expired.json()["detail"] == unknown.json()["detail"] == INVALID_LINK

    def test_cancel_unlock(self, client, email, clock, cron_key):
        _add(client)
        token = email.token_from(TEMPLATE_VERIFICATION)
        client.post("/api/legacy-access/verify", json={"token": token})
        clock.advance(days=200)
        client.post("/api/cron/legacy-access/inactivity-sweep", headers=cron_key)
        cancel_token = email.token_from(TEMPLATE_INACTIVITY_WARNING, "cancelUrl")
        trigger = client.get("/api/legacy-access/config").json()["config"]["trigger"]
        assert "cancelToken" not in trigger
        assert trigger["unlockScheduledAt"] is not None

        first = client.post("/api/legacy-access/cancel-unlock", json={"token": cancel_token})
        second = client.post("/api/legacy-access/cancel-unlock", json={"token": cancel_token})

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert second.status_code == 400
        assert second.json()["detail"] == INVALID_LINK

    def test_validate_unlock_token(self, client, service, owner_id, email):
        _add(client, folder_permissions={"folder-1": "edit"})
        client.post("/api/legacy-access/verify", json={"token": email.token_from(TEMPLATE_VERIFICATION)})
        service.trigger_unlock(owner_id, UnlockType.USER_TRIGGERED)
        access_token = email.token_from(TEMPLATE_UNLOCK, "accessUrl")

        response = client.post("/api/legacy-access/unlock/validate", json={"token": access_token})
        invalid = client.post("/api/legacy-access/unlock/validate", json={"token": "missing"})

        assert response.status_code == 200
        data = response.json()
        assert data["beneficiary_name"] == "Bob"
        assert data["folder_permissions"] == {"folder-1": "edit"}
        assert data["unlock_type"] == "user_triggered"
        assert data["first_used_at"] is not None
        assert invalid.status_code == 400
        assert invalid.json()["detail"] == INVALID_LINK

    def test_empty_token_is_422(self, client):
        assert client.post("/api/legacy-access/verify", json={"token": ""}).status_code == 422


class TestCronEndpoints:
    def test_requires_key(self, client, cron_key):
        assert client.post("/api/cron/legacy-access/inactivity-sweep").status_code == 401
        assert (
            client.post(
                "/api/cron/legacy-access/reminder-sweep",
                headers={"Authorization": "Bearer wrong"},
            ).status_code
            == 403
        )

    def test_inactivity_sweep_summary(self, client, cron_key, email, clock):
        _add(client)
        client.post("/api/legacy-access/verify", json={"token": email.token_from(TEMPLATE_VERIFICATION)})
        clock.advance(days=200)

        response = client.post("/api/cron/legacy-access/inactivity-sweep", headers=cron_key)

        assert response.status_code == 200
        assert response.json() == {
            "configs_checked": 1,
            "skipped": 0,
            "warnings_sent": 1,
            "unlocks_triggered": 0,
            "errors": 0,
        }

    def test_reminder_sweep_summary(self, client, cron_key):
        response = client.post("/api/cron/legacy-access/reminder-sweep", headers=cron_key)

        assert response.status_code == 200
        assert response.json() == {"configs_checked": 0, "reminders_sent": 0, "errors": 0}


class TestServiceEndpoints:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"]["ready"] is True
        assert "inactivity" in data["sweeps"]

    def test_root_lists_endpoints(self, client):
        data = client.get("/").json()

        assert data["status"] == "running"
        assert data["endpoints"]["verify"] == "/api/legacy-access/verify"
