"""Health check endpoint for the Eras API.

Provides a liveness probe for the hosting platform's monitoring.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from eras.config import APP_VERSION
from eras.infrastructure.database import get_db_connection, get_pool_stats
from eras.infrastructure.database_schema import validate_schema
from eras.observability.logging import get_logger
from eras.observability.telemetry import get_latency_stats

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


@router.get("/health")
def health_check() -> dict[str, Any]:
    """Health check endpoint.

    Returns service status, version, database readiness and how long the
    last sweeps took. Reports "degraded" rather than failing when the
    database is unavailable.
    """
    database: dict[str, Any]
    try:
        with get_db_connection() as conn:
            validate_schema(conn)
        database = {"ready": True, **get_pool_stats()}
    except (FileNotFoundError, ValueError) as e:
        logger.warning("Health check database problem: %s", e)
        database = {"ready": False}

    return {
        "status": "healthy" if database["ready"] else "degraded",
        "service": "Eras Legacy Access API",
        "version": APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "database": database,
        "sweeps": {
            "inactivity": get_latency_stats("legacy.sweep.inactivity.latency"),
            "reminders": get_latency_stats("legacy.sweep.reminders.latency"),
        },
    }
