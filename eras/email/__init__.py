"""Outbound email for Eras."""

from eras.email.client import (
    EmailClient,
    EmailMessage,
    EmailResult,
    HttpEmailClient,
    LoggingEmailClient,
    get_email_client,
)

__all__ = [
    "EmailClient",
    "EmailMessage",
    "EmailResult",
    "HttpEmailClient",
    "LoggingEmailClient",
    "get_email_client",
]
