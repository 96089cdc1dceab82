"""Centralized configuration for the Eras legacy access backend.

Re-exports everything from eras.infrastructure.settings, then adds typed
constants for the database, email transport, identity cache, token lifetimes
and the legacy access timers.  Environment variable overrides use safe
defaults so the app starts without extra env configuration.
"""

from __future__ import annotations

import os

from eras.infrastructure.settings import *  # noqa: F401, F403 - re-export existing

# --- App ---
APP_VERSION: str = "1.0.0"

# --- Database ---
DB_POOL_SIZE: int = int(os.getenv("ERAS_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(os.getenv("ERAS_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(os.getenv("ERAS_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(os.getenv("ERAS_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(os.getenv("ERAS_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("ERAS_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("ERAS_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("ERAS_DB_RETRY_JITTER", "0.1"))

# --- Config writes (compare-and-swap) ---
CONFIG_WRITE_MAX_ATTEMPTS: int = int(os.getenv("ERAS_CONFIG_WRITE_MAX_ATTEMPTS", "5"))

# --- Email transport ---
EMAIL_TIMEOUT_SECONDS: float = float(os.getenv("ERAS_EMAIL_TIMEOUT", "10.0"))
EMAIL_MAX_ATTEMPTS: int = int(os.getenv("ERAS_EMAIL_MAX_ATTEMPTS", "3"))

# --- Identity cache ---
AUTH_CACHE_MAX_SIZE: int = 1000
AUTH_CACHE_TTL_SECONDS: int = 600

# --- Legacy access timers ---
DAYS_PER_MONTH: int = 30
GRACE_PERIOD_DAYS: int = 30
DEFAULT_INACTIVITY_MONTHS: int = 6
MIN_INACTIVITY_MONTHS: int = 1
MAX_INACTIVITY_MONTHS: int = 120
IMMEDIATE_TOKEN_DAYS: int = 30
MANUAL_TOKEN_DAYS: int = 14
UNLOCK_TOKEN_YEARS: int = 100

# Reminder tiers: reminder number -> days since the unlock-time notification
REMINDER_SCHEDULE_DAYS: dict[int, int] = {1: 7, 2: 14, 3: 30}

# --- Validation ---
MAX_NAME_LENGTH: int = 200
MAX_PERSONAL_MESSAGE_LENGTH: int = 5000
MAX_PHONE_LENGTH: int = 40
MAX_FOLDER_PERMISSIONS: int = 500
