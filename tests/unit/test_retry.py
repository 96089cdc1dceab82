"""Unit tests for retry policy and circuit breaker"""

from __future__ import annotations

import pytest

from eras.infrastructure.retry import AdapterError, CircuitBreaker, CircuitOpenError, RetryPolicy


class FakeMonotonic:
    def __init__(self):
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


def _policy(max_attempts: int = 3) -> tuple[RetryPolicy, list[float]]:
    sleeps: list[float] = []
    return RetryPolicy(stage="test", max_attempts=max_attempts, sleep_fn=sleeps.append), sleeps


def test_retries_transient_errors_until_success():
    policy, sleeps = _policy()
    call_count = [0]

    def flaky():
        call_count[0] += 1
        if call_count[0] < 3:
            raise AdapterError("rate limited", status_code=429)
        return "ok"

    assert policy.execute(flaky) == "ok"
    assert call_count[0] == 3
    assert len(sleeps) == 2
    assert sleeps[1] > sleeps[0]


def test_gives_up_after_max_attempts():
    policy, sleeps = _policy(max_attempts=2)

    def always_down():
        raise AdapterError("unavailable", status_code=502)

    with pytest.raises(AdapterError, match="unavailable"):
        policy.execute(always_down)
    assert len(sleeps) == 1


def test_client_errors_raise_immediately():
    policy, sleeps = _policy()

    def rejected():
        raise AdapterError("forbidden", status_code=403)

    with pytest.raises(AdapterError):
        policy.execute(rejected)
    assert sleeps == []


def test_open_circuit_is_not_retried():
    policy, sleeps = _policy()

    def open_circuit():
        raise CircuitOpenError("open")

    with pytest.raises(CircuitOpenError):
        policy.execute(open_circuit)
    assert sleeps == []


def test_breaker_opens_and_recovers():
    clock = FakeMonotonic()
    breaker = CircuitBreaker(stage="test", fail_max=2, reset_timeout=30, clock=clock)

    breaker.record_failure()
    assert breaker.allow_request()
    breaker.record_failure()
    assert breaker.state == "open"
    assert not breaker.allow_request()

    clock.value = 31
    assert breaker.allow_request()
    assert breaker.state == "half_open"

    breaker.record_success()
    assert breaker.state == "closed"


def test_half_open_failure_reopens():
    clock = FakeMonotonic()
    breaker = CircuitBreaker(stage="test", fail_max=2, reset_timeout=30, clock=clock)
    breaker.record_failure()
    breaker.record_failure()
    clock.value = 31
    breaker.allow_request()

    breaker.record_failure()

    assert breaker.state == "open"
    assert not breaker.allow_request()
