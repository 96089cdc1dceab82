"""FastAPI server for Eras legacy access"""

from __future__ import annotations

import sqlite3
from typing import Any

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from eras.api.routes.cron import router as cron_router
from eras.api.routes.health import router as health_router
from eras.api.routes.legacy_access import router as legacy_access_router
from eras.config import API_HOST, API_PORT, APP_VERSION, FRONTEND_URL, is_development
from eras.infrastructure.database import init_database
from eras.observability.logging import get_logger
from eras.observability.telemetry import counter, log_event

# Load environment variables from .env file
load_dotenv()

app = FastAPI(title="Eras Legacy Access API", version=APP_VERSION)

logger = get_logger(__name__)


# Custom validation error handler to prevent information leakage
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Validation failures return field names only, never the submitted values
    (which can be email addresses or tokens).
    """
    logger.warning("Validation error on %s: %d error(s)", request.url.path, len(exc.errors()))
    counter("api.validation_errors")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Invalid request format. Please check your request and try again.",
            "error_count": len(exc.errors()),
            "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
        },
    )


# CORS - the web frontend is the only browser client
ALLOWED_ORIGINS = [FRONTEND_URL]

if is_development():
    ALLOWED_ORIGINS.extend(
        [
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000",
        ]
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(set(ALLOWED_ORIGINS)),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)

# Initialize database schema
try:
    logger.info("Initializing database schema...")
    init_database()
    logger.info("Database initialization complete")
except sqlite3.OperationalError as e:
    logger.critical("Database schema error: %s", e)
    raise RuntimeError(f"Database initialization failed: {e}") from e
except OSError as e:
    logger.critical("Database file could not be created: %s", e)
    raise RuntimeError(f"Database initialization failed: {e}") from e

app.include_router(health_router)
app.include_router(legacy_access_router)
app.include_router(cron_router)

log_event("api.startup", service="eras-legacy-access", version=APP_VERSION)


@app.get("/")
def root() -> dict[str, Any]:
    return {
        "service": "Eras Legacy Access API",
        "version": APP_VERSION,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "config": "/api/legacy-access/config",
            "beneficiaries": "/api/legacy-access/beneficiaries",
            "trigger_inactivity": "/api/legacy-access/trigger/inactivity",
            "trigger_date": "/api/legacy-access/trigger/date",
            "activity": "/api/legacy-access/activity",
            "verify": "/api/legacy-access/verify",
            "cancel_unlock": "/api/legacy-access/cancel-unlock",
            "unlock_validate": "/api/legacy-access/unlock/validate",
            "inactivity_sweep": "/api/cron/legacy-access/inactivity-sweep",
            "reminder_sweep": "/api/cron/legacy-access/reminder-sweep",
        },
    }


def main() -> None:
    """Run the API with uvicorn (``eras-api`` console script)."""
    uvicorn.run("eras.api.app:app", host=API_HOST, port=API_PORT)
