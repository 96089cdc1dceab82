"""
Pytest configuration for Eras tests

Provides a throwaway SQLite database per test, a controllable clock and an
email client that records what would have been sent.
"""

from __future__ import annotations

import os
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

# Point the process-wide database somewhere disposable before eras is imported
# (importing the API module initializes the schema at the configured path).
os.environ.setdefault("ERAS_DB_PATH", str(Path(tempfile.mkdtemp(prefix="eras-tests-")) / "eras.db"))
os.environ.setdefault("ERAS_ENV", "test")

from eras.email.client import EmailMessage, EmailResult  # noqa: E402
from eras.infrastructure.database import init_database, reset_pool  # noqa: E402
from eras.legacy.beneficiaries import NewBeneficiary  # noqa: E402
from eras.legacy.models import NotificationTiming  # noqa: E402
from eras.legacy.service import LegacyAccessService  # noqa: E402
from eras.observability.telemetry import reset_telemetry  # noqa: E402
from eras.storage.kv_store import SQLiteKeyValueStore  # noqa: E402

START = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
OWNER_ID = "owner-1"
OWNER_EMAIL = "owner@example.com"
FRONTEND = "https://app.example.com"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: float = 0, hours: float = 0) -> datetime:
        self.now = self.now + timedelta(days=days, hours=hours)
        return self.now


class RecordingEmailClient:
    """Email client that keeps every message; flip `fail` to simulate an outage."""

    def __init__(self):
        self.messages: list[EmailMessage] = []
        self.fail = False

    def send(self, message: EmailMessage) -> EmailResult:
        if self.fail:
            return EmailResult(success=False, error="delivery service unavailable")
        self.messages.append(message)
        return EmailResult(success=True, message_id=f"msg-{len(self.messages)}")

    def with_template(self, template: str) -> list[EmailMessage]:
        return [m for m in self.messages if m.template == template]

    def last(self, template: str) -> EmailMessage:
        matching = self.with_template(template)
        assert matching, f"no {template} email was sent"
        return matching[-1]

    def token_from(self, template: str, url_field: str = "verificationUrl") -> str:
        return self.last(template).variables[url_field].split("token=", 1)[1]


@pytest.fixture(autouse=True)
def clean_telemetry():
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def db(tmp_path, monkeypatch):
    """Fresh, initialized database for one test."""
    monkeypatch.setenv("ERAS_DB_PATH", str(tmp_path / "eras.db"))
    reset_pool()
    init_database()
    yield tmp_path / "eras.db"
    reset_pool()


@pytest.fixture
def store(db):
    return SQLiteKeyValueStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def email():
    return RecordingEmailClient()


@pytest.fixture
def service(store, email, clock):
    svc = LegacyAccessService(store=store, email_client=email, now_fn=clock, frontend_url=FRONTEND)
    svc.remember_owner(OWNER_ID, OWNER_EMAIL, "Alice Owner")
    return svc


@pytest.fixture
def owner_id():
    return OWNER_ID


@pytest.fixture
def make_beneficiary():
    """Factory for owner input; immediate timing unless told otherwise."""

    def _make(
        email: str = "bob@x.com",
        name: str = "Bob",
        timing: NotificationTiming = NotificationTiming.IMMEDIATE,
        **kwargs,
    ) -> NewBeneficiary:
        return NewBeneficiary(name=name, email=email, notification_timing=timing, **kwargs)

    return _make


@pytest.fixture
def add_verified(service, make_beneficiary):
    """Factory that designates a beneficiary immediately and completes their verification."""

    def _add(address: str = "bob@x.com", **kwargs):
        change = service.add_beneficiary(OWNER_ID, make_beneficiary(address, **kwargs))
        service.verify_beneficiary(change.beneficiary.verification_token)
        return service.get_config(OWNER_ID).find_beneficiary(change.beneficiary.id)

    return _add
