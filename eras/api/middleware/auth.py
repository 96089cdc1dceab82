"""Scheduler authentication for the Eras cron endpoints"""

from __future__ import annotations

import os
import secrets

from fastapi import Header, HTTPException, status

from eras.config import is_production
from eras.observability.logging import get_logger

logger = get_logger(__name__)


class APIKeyAuth:
    """
    Shared-secret authentication for endpoints called by the external scheduler.

    The key is read from ERAS_CRON_API_KEY. Without it the endpoints are open in
    development and refuse every request in production.
    """

    def __init__(self):
        self.api_key = os.getenv("ERAS_CRON_API_KEY")
        if not self.api_key:
            logger.warning("ERAS_CRON_API_KEY not set - cron endpoints are unprotected outside production!")

    def verify_api_key(self, authorization: str | None = Header(None)) -> bool:
        """
        Verify API key from Authorization header.

        Expected format: "Bearer {api_key}"
        """
        if not self.api_key:
            if is_production():
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail="Cron authentication not configured",
                )
            return True

        if not authorization:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing authorization header",
                headers={"WWW-Authenticate": "Bearer"},
            )

        try:
            scheme, token = authorization.split()
            if scheme.lower() != "bearer":
                raise ValueError("Invalid authentication scheme")
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authorization header format. Expected: Bearer {api_key}",
                headers={"WWW-Authenticate": "Bearer"},
            ) from e

        # Timing-safe comparison
        if not secrets.compare_digest(token, self.api_key):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid API key",
            )

        return True


# Global auth instance
auth = APIKeyAuth()


def require_cron_auth(authorization: str | None = Header(None)) -> bool:
    """
    Dependency for endpoints that only the scheduler may call.

    Usage:
        @router.post("/api/cron/job")
        async def job(_authenticated: bool = Depends(require_cron_auth)):
            ...
    """
    return auth.verify_api_key(authorization)
