"""Unit tests for the HTTP email transport"""

from __future__ import annotations

import json

import httpx

from eras.email.client import EmailMessage, HttpEmailClient, LoggingEmailClient
from eras.infrastructure.retry import CircuitBreaker, RetryPolicy
from eras.observability.telemetry import get_counter

MESSAGE = EmailMessage(to="bob@x.com", subject="Hello", template="verification", variables={"a": 1})


def _client(handler, breaker: CircuitBreaker | None = None) -> tuple[HttpEmailClient, list[float]]:
    sleeps: list[float] = []
    client = HttpEmailClient(
        "https://mail.example.com/send",
        api_key="mail-key",
        from_address="Eras <noreply@example.com>",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        retry_policy=RetryPolicy(stage="email", max_attempts=3, sleep_fn=sleeps.append),
        breaker=breaker or CircuitBreaker(stage="email", fail_max=5),
    )
    return client, sleeps


def test_send_posts_message_json():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "msg_42"})

    client, sleeps = _client(handler)
    result = client.send(MESSAGE)

    assert result.success
    assert result.message_id == "msg_42"
    assert sleeps == []
    body = json.loads(seen[0].content)
    assert body == {
        "from": "Eras <noreply@example.com>",
        "to": "bob@x.com",
        "subject": "Hello",
        "template": "verification",
        "variables": {"a": 1},
    }
    assert seen[0].headers["Authorization"] == "Bearer mail-key"


def test_server_errors_are_retried():
    calls = [0]

    def handler(request: httpx.Request) -> httpx.Response:
        calls[0] += 1
        if calls[0] < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(202, json={"id": "late"})

    client, sleeps = _client(handler)
    result = client.send(MESSAGE)

    assert result.success
    assert calls[0] == 3
    assert len(sleeps) == 2


def test_client_errors_are_not_retried():
    calls = [0]

    def handler(request: httpx.Request) -> httpx.Response:
        calls[0] += 1
        return httpx.Response(400, text="bad template")

    client, _ = _client(handler)
    result = client.send(MESSAGE)

    assert not result.success
    assert "400" in result.error
    assert calls[0] == 1
    assert get_counter("email.send_failed") == 1


def test_network_errors_never_raise():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    client, sleeps = _client(handler)
    result = client.send(MESSAGE)

    assert not result.success
    assert len(sleeps) == 2


def test_open_circuit_fails_fast():
    calls = [0]

    def handler(request: httpx.Request) -> httpx.Response:
        calls[0] += 1
        return httpx.Response(500)

    breaker = CircuitBreaker(stage="email", fail_max=3, clock=lambda: 0.0)
    client, _ = _client(handler, breaker)

    assert not client.send(MESSAGE).success
    assert breaker.state == "open"

    assert not client.send(MESSAGE).success
    assert calls[0] == 3


def test_logging_client_always_succeeds():
    assert LoggingEmailClient().send(MESSAGE).success
