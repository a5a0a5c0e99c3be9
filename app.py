"""
Scan Station - Flask Application Entry Point.

This is a slim app factory that:
1. Configures logging
2. Builds the scan engine from configuration (fail-fast)
3. Starts the engine's background threads
4. Registers route blueprints
5. Sets up JSON error handlers and shutdown cleanup

ARCHITECTURE:
    Main Thread
    ├── Engine construction (config parsing, data directory, queue load)
    ├── Flask request handling (scans, bulk scans, queue review)
    └── Cleanup on shutdown (engine.stop)

    Sync Thread (one per reconciliation run)
    └── Replays queued actions after connectivity returns

    Connectivity Thread (background, optional)
    └── Pings the package API and feeds the connectivity signal

The engine is built per app; nothing is a process-wide singleton.
"""

from __future__ import annotations

import atexit
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from flask import Flask
from werkzeug.exceptions import HTTPException

from logging_config import setup_logging, get_logger
from core.exceptions import ConfigurationError, ScanStationError, StorageError
from services.scan_engine import ScanEngine
from routes import register_blueprints


# Module logger (configured after setup_logging)
logger = get_logger(__name__)


def _get_base_path() -> Path:
    """
    Get the base path for the application.

    In a frozen bundle: Returns the directory containing the executable
    In development: Returns the directory containing app.py
    """
    if getattr(sys, 'frozen', False):
        return Path(sys.executable).parent
    else:
        return Path(__file__).parent


def create_app(engine: Optional[ScanEngine] = None, config_object: str = "config.Config") -> Flask:
    """
    Application factory - creates and configures Flask app.

    FAIL-FAST: a malformed setting or an unreadable data directory stops
    the app from starting.

    Args:
        engine: Pre-built engine (tests inject one with fakes)
        config_object: Import path of the config class

    Returns:
        Configured Flask application

    Raises:
        ConfigurationError: If a setting is malformed
        StorageError: If the data directory cannot be opened
    """
    # Load .env from base path (next to executable in production)
    # Use override=True so .env file always takes precedence over shell environment
    base_path = _get_base_path()
    env_file = base_path / '.env'
    if env_file.exists():
        load_dotenv(env_file, override=True)
    else:
        load_dotenv(override=True)

    app = Flask(__name__)
    app.config.from_object(config_object)

    # Configure logging
    log_level = logging.DEBUG if app.config.get("DEBUG") else logging.INFO
    enable_file_logging = app.config.get("ENVIRONMENT") == "production"

    root_logger = setup_logging(
        app_name="scan_station",
        log_level=log_level,
        enable_file_logging=enable_file_logging
    )

    # Set Flask's logger to use our configured logger
    app.logger.handlers = root_logger.handlers
    app.logger.setLevel(log_level)

    logger.info(f"Starting Scan Station in {app.config.get('ENVIRONMENT')} mode")

    # =========================================================================
    # ENGINE INITIALIZATION (FAIL-FAST)
    # =========================================================================

    if engine is None:
        try:
            engine = ScanEngine.from_config(app.config)
        except (ConfigurationError, StorageError) as e:
            logger.error(f"FATAL: Cannot start application - {e}")
            raise

    engine.start()
    app.config["SCAN_ENGINE"] = engine

    # =========================================================================
    # CLEANUP REGISTRATION
    # =========================================================================

    def cleanup():
        """Cleanup on application shutdown."""
        logger.info("Shutting down...")
        engine.stop()
        logger.info("Shutdown complete")

    atexit.register(cleanup)

    # =========================================================================
    # REGISTER BLUEPRINTS
    # =========================================================================

    register_blueprints(app)

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return {"success": False, "message": e.description, "status": e.code}, e.code

    @app.errorhandler(StorageError)
    def handle_storage_error(e):
        logger.error(f"Storage failure: {e}")
        return {"success": False, "message": e.message, "error_kind": "storage_error"}, 503

    @app.errorhandler(ScanStationError)
    def handle_engine_error(e):
        logger.error(f"Unhandled engine error: {e}", exc_info=True)
        return {"success": False, "message": e.message}, 500

    @app.errorhandler(500)
    def handle_server_error(e):
        logger.error(f"500 error: {e}", exc_info=True)
        return {"success": False, "message": "An unexpected error occurred. Please try again."}, 500

    logger.info("Application initialized successfully")
    return app


if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "1") == "1"
    # The reloader would start a second engine against the same data directory
    app.run(debug=debug_mode, use_reloader=False)
