"""
User authentication middleware for the Eras API.

Resolves the owner's session token against the identity provider's user-info
endpoint and extracts their identity.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from cachetools import TTLCache
from fastapi import HTTPException, Request, status

from eras.config import (
    AUTH_CACHE_MAX_SIZE,
    AUTH_CACHE_TTL_SECONDS,
    IDENTITY_API_KEY,
    IDENTITY_USERINFO_URL,
    is_production,
)
from eras.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AuthenticatedUser:
    """Represents an authenticated account owner."""

    id: str
    email: str
    name: str | None = None

    def __str__(self) -> str:
        return f"User({self.id})"


# Validated tokens expire from the cache so revoked sessions stop working
_token_cache: TTLCache[str, AuthenticatedUser] = TTLCache(
    maxsize=AUTH_CACHE_MAX_SIZE, ttl=AUTH_CACHE_TTL_SECONDS
)


def _user_from_payload(payload: dict[str, Any]) -> AuthenticatedUser:
    metadata = payload.get("user_metadata") or {}
    return AuthenticatedUser(
        id=str(payload["id"]),
        email=payload.get("email") or "",
        name=metadata.get("name") or metadata.get("full_name") or payload.get("name"),
    )


async def resolve_bearer_token(token: str) -> AuthenticatedUser:
    """
    Resolve a session token to the user it belongs to.

    Raises:
        HTTPException: 401 for an invalid/expired token, 503 if the identity
            provider is unreachable, 500 if it is not configured in production
    """
    if token in _token_cache:
        return _token_cache[token]

    if not IDENTITY_USERINFO_URL:
        if is_production():
            logger.error("ERAS_IDENTITY_USERINFO_URL not configured in production!")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Server misconfiguration: identity provider not set",
            )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service not configured",
        )

    headers = {"Authorization": f"Bearer {token}"}
    if IDENTITY_API_KEY:
        headers["apikey"] = IDENTITY_API_KEY

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(IDENTITY_USERINFO_URL, headers=headers, timeout=10.0)
        except httpx.TimeoutException:
            logger.warning("Token validation timed out")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Authentication service unavailable",
            ) from None
        except httpx.RequestError as e:
            logger.error("Token validation request failed: %s", e)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Authentication service unavailable",
            ) from e

    if response.status_code != 200:
        logger.warning("Identity provider rejected token (status %d)", response.status_code)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user = _user_from_payload(response.json())
    except (KeyError, ValueError) as e:
        logger.error("Unexpected identity provider response: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Failed to retrieve user information",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    _token_cache[token] = user
    logger.info("Authenticated user: %s (cache size: %d)", user, len(_token_cache))
    return user


def _extract_bearer_token(authorization: str | None) -> str:
    """Extract token from Authorization header."""
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format. Expected: Bearer <token>",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return parts[1]


async def get_current_user(request: Request) -> AuthenticatedUser:
    """
    FastAPI dependency to get the current authenticated owner.

    Usage:
        @router.get("/endpoint")
        async def endpoint(user: AuthenticatedUser = Depends(get_current_user)):
            ...
    """
    token = _extract_bearer_token(request.headers.get("Authorization"))
    return await resolve_bearer_token(token)


def clear_token_cache() -> None:
    """Clear the token cache. Useful for testing."""
    _token_cache.clear()
