"""Unguessable identifiers for legacy access records."""

from __future__ import annotations

import secrets
import uuid

# 32 random bytes -> 43 url-safe characters
_TOKEN_BYTES = 32


def generate_token() -> str:
    """Verification, unlock and cancel tokens. Safe to embed in a URL."""
    return secrets.token_urlsafe(_TOKEN_BYTES)


def generate_beneficiary_id() -> str:
    return f"ben_{uuid.uuid4().hex}"
