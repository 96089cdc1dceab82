"""
Email transport for legacy access notifications.

The core only chooses a template and fills its variables; rendering and
delivery belong to the email delivery service, which receives the message as
JSON: {from, to, subject, template, variables}.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from eras.config import (
    EMAIL_FROM_ADDRESS,
    EMAIL_MAX_ATTEMPTS,
    EMAIL_SERVICE_API_KEY,
    EMAIL_SERVICE_URL,
    EMAIL_TIMEOUT_SECONDS,
    is_production,
)
from eras.infrastructure.retry import AdapterError, CircuitBreaker, CircuitOpenError, RetryPolicy
from eras.observability.logging import get_logger
from eras.observability.telemetry import counter

logger = get_logger(__name__)


class EmailMessage(BaseModel):
    """One outbound email, before rendering."""

    to: str
    subject: str
    template: str
    variables: dict[str, Any] = Field(default_factory=dict)


class EmailResult(BaseModel):
    success: bool
    error: str | None = None
    message_id: str | None = None


class EmailClient(Protocol):
    """Anything that can hand an EmailMessage to a delivery service."""

    def send(self, message: EmailMessage) -> EmailResult: ...


class HttpEmailClient:
    """
    Posts messages to the email delivery service over HTTP.

    Transient failures (network errors, 429, 5xx) are retried with backoff; a
    run of failures opens the circuit and later sends fail fast until it resets.
    """

    def __init__(
        self,
        service_url: str,
        api_key: str | None = None,
        from_address: str = EMAIL_FROM_ADDRESS,
        http_client: httpx.Client | None = None,
        retry_policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self.service_url = service_url
        self.api_key = api_key
        self.from_address = from_address
        self.http_client = http_client or httpx.Client(timeout=EMAIL_TIMEOUT_SECONDS)
        self.retry_policy = retry_policy or RetryPolicy(stage="email", max_attempts=EMAIL_MAX_ATTEMPTS)
        self.breaker = breaker or CircuitBreaker(stage="email")

    def send(self, message: EmailMessage) -> EmailResult:
        try:
            message_id = self.retry_policy.execute(self._post, message)
        except AdapterError as e:
            counter("email.send_failed")
            logger.error(
                "Email delivery failed for template %s (status %s): %s",
                message.template,
                e.status_code,
                e,
            )
            return EmailResult(success=False, error=str(e))

        counter("email.sent")
        return EmailResult(success=True, message_id=message_id)

    def _post(self, message: EmailMessage) -> str | None:
        if not self.breaker.allow_request():
            raise CircuitOpenError("Email service circuit is open")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {"from": self.from_address, **message.model_dump()}

        try:
            response = self.http_client.post(self.service_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            self.breaker.record_failure()
            raise AdapterError(f"Email service request failed: {e}") from e

        if response.status_code >= 400:
            if response.status_code == 429 or response.status_code >= 500:
                self.breaker.record_failure()
            raise AdapterError(
                f"Email service returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        self.breaker.record_success()
        try:
            return response.json().get("id")
        except ValueError:
            return None


class LoggingEmailClient:
    """Development stand-in used when no email service is configured: logs and succeeds."""

    def send(self, message: EmailMessage) -> EmailResult:
        logger.info(
            "Email service not configured; would send template %s with variables %s",
            message.template,
            sorted(message.variables),
        )
        counter("email.logged_only")
        return EmailResult(success=True)


_client: EmailClient | None = None


def get_email_client() -> EmailClient:
    """
    Get or create the process-wide email client.

    Raises:
        RuntimeError: In production when ERAS_EMAIL_SERVICE_URL is not set
    """
    global _client
    if _client is None:
        if EMAIL_SERVICE_URL:
            _client = HttpEmailClient(EMAIL_SERVICE_URL, api_key=EMAIL_SERVICE_API_KEY)
        elif is_production():
            raise RuntimeError("ERAS_EMAIL_SERVICE_URL must be set in production")
        else:
            logger.warning("ERAS_EMAIL_SERVICE_URL not set - emails will only be logged (dev mode)")
            _client = LoggingEmailClient()
    return _client
