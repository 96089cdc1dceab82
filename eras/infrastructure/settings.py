"""
Application-wide settings and environment configuration
"""

from __future__ import annotations

import os
from pathlib import Path

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent.parent
ERAS_ROOT = Path(__file__).parent.parent

# Environment
ENV = os.getenv("ERAS_ENV", "development")
DEBUG = ENV == "development"

# API Configuration
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Frontend (links embedded in emails)
FRONTEND_URL = os.getenv("ERAS_FRONTEND_URL", "http://localhost:3000").rstrip("/")

# Identity provider (bearer token -> user)
IDENTITY_USERINFO_URL = os.getenv("ERAS_IDENTITY_USERINFO_URL")
IDENTITY_API_KEY = os.getenv("ERAS_IDENTITY_API_KEY")

# Email delivery service
EMAIL_SERVICE_URL = os.getenv("ERAS_EMAIL_SERVICE_URL")
EMAIL_SERVICE_API_KEY = os.getenv("ERAS_EMAIL_SERVICE_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("ERAS_EMAIL_FROM", "Eras <noreply@erastimecapsule.com>")


def is_production() -> bool:
    """Check if running in production"""
    return ENV == "production"


def is_development() -> bool:
    """Check if running in development"""
    return ENV == "development"
