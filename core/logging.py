"""
Unified Logging Configuration

This module sets up a centralized logging system for the whole runtime.
All modules should use a logger from this module instead of print().

Usage:
    from core.logging import get_logger
    logger = get_logger(__name__)

    logger.debug("Connection manager starting...")
    logger.warning("Time out of sync")

Log Levels (from most to least verbose):
    DEBUG    - Lifecycle chatter (e.g., "Dispatcher worker 3 started")
    INFO     - Subsystem state changes (e.g., "Database manager started.")
    WARNING  - Degraded operation (e.g., "Internet connectivity lost")
    ERROR    - Failed operations (e.g., "Failed to cancel order 12")
    CRITICAL - The process cannot continue

Configuration:
    Log level is controlled by the LOG_LEVEL setting (see core.config).
"""

import logging
import sys
from typing import Optional

ROOT_LOGGER_NAME = "venuehub"


def setup_logging(
    log_level: str = "INFO",
    log_format: Optional[str] = None,
    include_timestamp: bool = True,
    include_module: bool = True
) -> logging.Logger:
    """
    Configure and return the application logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Custom log format string (uses default if None)
        include_timestamp: Include timestamp in log messages
        include_module: Include logger name in log messages

    Example:
        >>> logger = setup_logging(log_level="DEBUG")
        >>> logger.info("Engine started")
        2024-01-01 12:00:00 [INFO] venuehub Engine started
    """
    if log_format is None:
        format_parts = []
        if include_timestamp:
            format_parts.append("%(asctime)s")
        format_parts.append("[%(levelname)s]")
        if include_module:
            format_parts.append("%(name)s")
        format_parts.append("%(message)s")
        log_format = " ".join(format_parts)

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True
    )

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    return logger


# ============================================
# Initialize Logger with Settings
# ============================================

try:
    from core.config import settings
    log_level = settings.log_level
except ImportError:
    log_level = "INFO"

logger = setup_logging(log_level=log_level)


# ============================================
# Convenience Functions
# ============================================

def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger of the application logger.

    Example:
        # In services/timekeeper.py:
        logger = get_logger(__name__)  # "venuehub.services.timekeeper"
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def set_log_level(level: str) -> None:
    """Change the log level at runtime."""
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logging.getLogger().setLevel(getattr(logging, level.upper(), logging.INFO))


# ============================================
# Log Helper Functions
# ============================================

def log_api_request(exchange: str, endpoint: str, params: dict = None) -> None:
    """
    Log an adapter REST request with consistent formatting.

    Example:
        >>> log_api_request("binance", "/fapi/v1/depth", {"symbol": "BTCUSDT"})
        [DEBUG] API Request: binance /fapi/v1/depth | Params: {'symbol': 'BTCUSDT'}
    """
    if params:
        logger.debug(f"API Request: {exchange} {endpoint} | Params: {params}")
    else:
        logger.debug(f"API Request: {exchange} {endpoint}")


def log_subsystem_event(name: str, event: str, details: str = None) -> None:
    """
    Log a subsystem lifecycle event.

    Failures log at ERROR, everything else at DEBUG.

    Example:
        >>> log_subsystem_event("database", "start failed", "connection refused")
        [ERROR] Subsystem: database start failed | connection refused
    """
    details_str = f" | {details}" if details else ""
    level = logging.ERROR if "failed" in event else logging.DEBUG
    logger.log(level, f"Subsystem: {name} {event}{details_str}")
