"""
Error message sanitization utility.

Prevents information leakage by sanitizing error messages before returning
them to clients. Token values in particular must never be echoed back.
"""

from __future__ import annotations

import re

from eras.observability.logging import get_logger

logger = get_logger(__name__)

# Patterns that might leak sensitive information
SENSITIVE_PATTERNS = [
    # File paths
    r"/[^\s]+\.py",
    r"[A-Za-z]:\\[^\s]+",
    # Stack trace indicators
    r"Traceback \(most recent call last\)",
    r"File \".*\"",
    r"line \d+",
    # Database errors
    r"sqlite3?\.",
    r"UNIQUE constraint",
    r"no such table",
    r"no such column",
    # Tokens, ids and secrets (long url-safe strings)
    r"[A-Za-z0-9_-]{20,}",
    r"Bearer [A-Za-z0-9._-]+",
    # Internal module names
    r"eras\.[a-z_.]+",
]

# Generic error messages for different error types
GENERIC_MESSAGES = {
    400: "Invalid request. Please check your input and try again.",
    401: "Authentication required.",
    403: "Access denied.",
    404: "Resource not found.",
    409: "Request conflicts with the current state.",
    422: "Invalid data format.",
    500: "An internal error occurred. Please try again later.",
    503: "Service temporarily unavailable.",
}


def sanitize_error_message(message: str, status_code: int = 500) -> str:
    """
    Sanitize an error message to prevent information leakage.

    Short, plain client-error messages (4xx) pass through; everything else is
    replaced with the generic message for the status code.
    """
    if not message:
        return GENERIC_MESSAGES.get(status_code, "An error occurred.")

    for pattern in SENSITIVE_PATTERNS:
        if re.search(pattern, message, re.IGNORECASE):
            logger.warning("Sanitized sensitive error pattern: %s", pattern)
            return GENERIC_MESSAGES.get(status_code, "An error occurred.")

    if (
        400 <= status_code < 500
        and len(message) < 120
        and not any(c in message for c in ["{", "}", "[", "]", "\n"])
    ):
        return message

    return GENERIC_MESSAGES.get(status_code, "An error occurred.")
