"""
Logging configuration for the QuickPay Bill Fetcher.
Provides structured logging with proper formatting.
"""

import os
import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

# Log directory
LOG_DIR = Path(os.getenv("LOG_DIR", Path(__file__).parent.parent / "logs"))
LOG_DIR.mkdir(parents=True, exist_ok=True)

# Log level from environment
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Packages whose module loggers (logging.getLogger(__name__)) share the app handlers
PACKAGE_LOGGERS = ("core", "browser", "monitoring")


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        # Copy so file handlers sharing the record don't get escape codes
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def _build_handlers(name: str) -> List[logging.Handler]:
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(ColoredFormatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    file_format = logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # File handler with rotation
    file_handler = RotatingFileHandler(
        LOG_DIR / f"{name}.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_format)

    # Error file handler (errors and above)
    error_handler = RotatingFileHandler(
        LOG_DIR / f"{name}_errors.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=5
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(file_format)

    return [console_handler, file_handler, error_handler]


def setup_logging(name: str = "bill_fetcher") -> logging.Logger:
    """
    Setup and return a configured logger.

    The same handlers are attached to the core, browser and monitoring
    package loggers so module-level loggers end up in the same files.

    Args:
        name: Logger name (default: bill_fetcher)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    level = getattr(logging, LOG_LEVEL, logging.INFO)
    handlers = _build_handlers(name)

    for target in (name,) + PACKAGE_LOGGERS:
        target_logger = logging.getLogger(target)
        target_logger.setLevel(level)
        if not target_logger.handlers:
            for handler in handlers:
                target_logger.addHandler(handler)
        target_logger.propagate = False

    return logger


# Create default logger
logger = setup_logging()


def log_request(method: str, path: str, status_code: int = None, duration_ms: float = None):
    """Log an HTTP request."""
    logger.info(f"HTTP {method} {path} -> {status_code} ({duration_ms:.2f}ms)" if duration_ms else f"HTTP {method} {path}")


def log_batch_event(batch_id: str, event: str, details: str = None, error: str = None):
    """Log a batch lifecycle event."""
    if error:
        logger.error(f"Batch {batch_id} {event} failed: {error}")
    else:
        logger.info(f"Batch {batch_id} {event}: {details}" if details else f"Batch {batch_id} {event}")


def log_session_event(session_id: str, event: str, details: str = None):
    """Log an automation session event."""
    logger.debug(f"Session [{session_id}] {event}: {details}" if details else f"Session [{session_id}] {event}")


def log_challenge_event(session_id: str, identifier: str, event: str, batch_id: Optional[str] = None):
    """Log a captcha relay event coming from a human client."""
    suffix = f" (batch {batch_id})" if batch_id else ""
    logger.info(f"Captcha [{session_id}/{identifier}] {event}{suffix}")
