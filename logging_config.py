"""
Centralized logging configuration for the scan station.

This module provides thread-aware logging with automatic thread context
in all log messages. Request threads, the reconciliation "Sync" thread and
the "Connectivity" probe thread all touch the same queue, so knowing which
thread logged a line is what makes an offline incident debuggable.

Features:
    - Automatic thread name and ID in all log messages
    - Console output (always enabled)
    - Rotating file logs (optional, for production)
    - Separate error log for ERROR/CRITICAL messages
    - Helper functions for getting loggers with consistent naming

Log Format:
    2025-12-03 10:15:30 [INFO    ] [MainThread] scan_station.app - Starting application
    2025-12-03 10:15:31 [INFO    ] [Connectivity] scan_station.core.connectivity - Connectivity changed: ONLINE
    2025-12-03 10:15:32 [INFO    ] [Sync] scan_station.action - [a1b2c3d4] Replayed collect for PKG-AB12-20240101

Usage:
    # At application startup
    from logging_config import setup_logging, get_logger

    setup_logging(log_level=logging.INFO, enable_file_logging=True)

    # In modules
    logger = get_logger(__name__)
    logger.info("This message includes thread context automatically")

    # For one scan action (idempotency token)
    action_logger = get_action_logger("a1b2c3d4-e5f6-...")
"""

import logging
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


APP_LOGGER_NAME = "scan_station"


# =============================================================================
# THREAD CONTEXT FILTER
# =============================================================================

class ThreadContextFilter(logging.Filter):
    """
    Logging filter that adds thread context to all log records.

    This filter adds two attributes to each log record:
        - thread_name: Name of the current thread (e.g., "MainThread", "Sync")
        - thread_id: Numeric ID of the current thread
    """

    def filter(self, record: logging.LogRecord) -> bool:
        current_thread = threading.current_thread()
        record.thread_name = current_thread.name
        record.thread_id = threading.get_ident()

        # Adding context, never filtering
        return True


# =============================================================================
# LOGGING SETUP
# =============================================================================

def setup_logging(
    app_name: str = APP_LOGGER_NAME,
    log_level: int = logging.INFO,
    log_dir: Optional[Path] = None,
    enable_file_logging: bool = True,
) -> logging.Logger:
    """
    Configure application logging with thread context.

    This sets up:
    1. Console handler (always enabled) - for immediate feedback
    2. Rotating file handler (optional) - for persistent logs
    3. Error file handler (optional) - for ERROR/CRITICAL only
    4. Thread context filter - adds thread name to all messages

    Args:
        app_name: Name of the root logger (default: "scan_station")
        log_level: Minimum log level (default: INFO)
        log_dir: Directory for log files (default: ./logs relative to this file)
        enable_file_logging: Whether to write to log files (default: True)

    Returns:
        Configured root logger instance
    """
    logger = logging.getLogger(app_name)
    logger.setLevel(log_level)
    logger.propagate = False  # Prevent duplicate logs to root logger

    # Allows re-configuration
    logger.handlers.clear()

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)-8s] [%(thread_name)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    thread_filter = ThreadContextFilter()

    # ---------------------------------------------------------------------
    # Console Handler (always enabled)
    # ---------------------------------------------------------------------
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(thread_filter)
    logger.addHandler(console_handler)

    # ---------------------------------------------------------------------
    # File Handlers (optional)
    # ---------------------------------------------------------------------
    if enable_file_logging:
        if log_dir is None:
            log_dir = Path(__file__).parent / "logs"

        log_dir.mkdir(parents=True, exist_ok=True)

        app_log_file = log_dir / f"{app_name}.log"
        file_handler = RotatingFileHandler(
            filename=app_log_file,
            maxBytes=10 * 1024 * 1024,  # 10 MB per file
            backupCount=5,
            encoding="utf-8"
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(thread_filter)
        logger.addHandler(file_handler)

        error_log_file = log_dir / f"{app_name}_error.log"
        error_handler = RotatingFileHandler(
            filename=error_log_file,
            maxBytes=10 * 1024 * 1024,  # 10 MB per file
            backupCount=5,
            encoding="utf-8"
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        error_handler.addFilter(thread_filter)
        logger.addHandler(error_handler)

        logger.info(f"File logging enabled: {app_log_file}")

    logger.info(f"Logging configured at level {logging.getLevelName(log_level)}")
    return logger


# =============================================================================
# LOGGER FACTORY FUNCTIONS
# =============================================================================

def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger with the application namespace.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance with thread context support

    Example:
        # In services/pending_queue.py
        logger = get_logger(__name__)
        # Logger name: "scan_station.services.pending_queue"
    """
    if not name.startswith(APP_LOGGER_NAME):
        name = f"{APP_LOGGER_NAME}.{name}"

    return logging.getLogger(name)


class ActionLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the short idempotency token."""

    def process(self, msg, kwargs):
        return f"[{self.extra['action_id']}] {msg}", kwargs


def get_action_logger(token: str) -> logging.LoggerAdapter:
    """
    Get a logger for one scan action.

    All actions share the "scan_station.action" logger; each message carries
    the first 8 characters of the idempotency token, so a single action can
    be followed from scan through queueing to replay.

    Args:
        token: Idempotency token of the action

    Returns:
        LoggerAdapter for the action
    """
    short_id = token[:8] if len(token) >= 8 else token
    return ActionLoggerAdapter(logging.getLogger(f"{APP_LOGGER_NAME}.action"), {"action_id": short_id})


def set_thread_name(name: str) -> None:
    """
    Set the name of the current thread.

    This name appears in log messages in the [thread_name] field.

    Example:
        set_thread_name("Sync")
    """
    threading.current_thread().name = name
