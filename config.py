"""
Configuration for the scan station.

Values come from the environment (optionally a .env file next to app.py).
The engine reads them once at startup; a malformed value fails fast with
ConfigurationError when the engine is built.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file early so environment variables are available for Config class
load_dotenv(override=True)

# Base directory (where this file lives)
BASE_DIR = Path(__file__).resolve().parent


class Config:
    """Default configuration for the Flask application."""

    # Flask settings
    SECRET_KEY = os.environ.get("FLASK_SECRET_KEY", "dev-secret-key")
    ENVIRONMENT = os.environ.get("FLASK_ENV", "development")
    DEBUG = os.environ.get("FLASK_DEBUG", "1") == "1"
    TESTING = False

    # ==========================================================================
    # Package API (remote authority)
    # ==========================================================================
    PACKAGE_API_BASE_URL = os.environ.get("PACKAGE_API_BASE_URL", "http://localhost:3000")
    PACKAGE_API_TOKEN = os.environ.get("PACKAGE_API_TOKEN", "")

    # Every call to the package API is bounded by this timeout
    REQUEST_TIMEOUT_SECONDS = os.environ.get("REQUEST_TIMEOUT_SECONDS", "12")

    # ==========================================================================
    # Local storage
    # ==========================================================================
    DATA_DIR = os.environ.get("DATA_DIR", str(BASE_DIR / "data"))

    # Snapshot cache: LRU bound and freshness window
    CACHE_MAX_ENTRIES = os.environ.get("CACHE_MAX_ENTRIES", "500")
    CACHE_TTL_HOURS = os.environ.get("CACHE_TTL_HOURS", "24")

    # Pending queue: bound and what to do when it is reached
    #   reject        - fail the new scan, keep everything already queued
    #   evict_oldest  - drop the oldest queued action to make room
    QUEUE_MAX_SIZE = os.environ.get("QUEUE_MAX_SIZE", "1000")
    QUEUE_OVERFLOW_POLICY = os.environ.get("QUEUE_OVERFLOW_POLICY", "reject")

    # ==========================================================================
    # Connectivity
    # ==========================================================================
    # Seconds between ping probes of the package API; 0 disables the probe
    # (the device shell then reports changes via POST /api/connectivity)
    CONNECTIVITY_PROBE_INTERVAL = os.environ.get("CONNECTIVITY_PROBE_INTERVAL", "15")

    # Seconds between sync retries while online with actions waiting (queued
    # after a 5xx or timeout); 0 disables them
    SYNC_RETRY_INTERVAL = os.environ.get("SYNC_RETRY_INTERVAL", "60")

    # ==========================================================================
    # Device descriptor stamped onto every scan
    # ==========================================================================
    DEVICE_NAME = os.environ.get("DEVICE_NAME", "")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False


class TestingConfig(Config):
    """Testing configuration."""
    DEBUG = False
    TESTING = True
    CONNECTIVITY_PROBE_INTERVAL = "0"
    SYNC_RETRY_INTERVAL = "0"
