"""
Logging utility for Tender Harvester.

Provides multi-destination logging with:
- Daily rotating file logs (YYYYMMDD_name.log)
- Colorized console output
- Structured context: fields passed via ``extra={...}`` are appended to
  every line as key=value pairs
- Module-specific logger instances with caching
"""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

import colorlog

from tender_harvester.config import LoggingConfig


# Global logger cache to prevent duplicate logger creation
_LOGGER_CACHE: Dict[str, logging.Logger] = {}

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}

LOG_COLORS = {
    "DEBUG": "white",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold_red",
}


def extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached to a record through ``extra=``."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_") and key != "log_color"
    }


def render_fields(fields: Dict[str, Any]) -> str:
    """
    Render context fields as ``key=value`` pairs.

    Example:
        >>> render_fields({"page_number": 3, "retryable": True})
        'page_number=3 retryable=True'
    """
    return " ".join(f"{key}={value}" for key, value in fields.items())


class _ContextMixin:
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        fields = extra_fields(record)
        if not fields:
            return message
        return f"{message} | {render_fields(fields)}"


class ContextFormatter(_ContextMixin, logging.Formatter):
    """Plain formatter appending ``extra`` context (file output)."""


class ColoredContextFormatter(_ContextMixin, colorlog.ColoredFormatter):
    """Colorized formatter appending ``extra`` context (console output)."""


class LoggerConfig:
    """
    Centralized logger configuration manager.

    Manages log directories, file naming conventions, and formatting rules.
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """Initialize logger configuration from application settings."""
        self.log_dir = Path(log_dir) if log_dir else LoggingConfig.LOG_DIR
        self.log_level = getattr(logging, LoggingConfig.LOG_LEVEL.upper(), logging.INFO)
        self.max_bytes = LoggingConfig.MAX_LOG_SIZE
        self.backup_count = LoggingConfig.BACKUP_COUNT

        # File format (detailed)
        self.file_format = LoggingConfig.LOG_FORMAT
        self.date_format = LoggingConfig.DATE_FORMAT

        # Console format (colorized and simplified)
        self.console_format = (
            "%(log_color)s%(levelname)-8s%(reset)s "
            "%(cyan)s%(name)s%(reset)s - %(message)s"
        )

        self.log_dir.mkdir(parents=True, exist_ok=True)

    def get_daily_log_filename(self, logger_name: str) -> str:
        """
        Generate daily log filename with YYYYMMDD prefix.

        Args:
            logger_name: Name of the logger

        Returns:
            Formatted log filename (e.g., '20260107_tender_harvester.log')
        """
        date_prefix = datetime.now().strftime("%Y%m%d")
        base_name = logger_name.replace(".", "_").lower()
        return f"{date_prefix}_{base_name}.log"

    def get_log_file_path(self, logger_name: str) -> Path:
        return self.log_dir / self.get_daily_log_filename(logger_name)


def setup_logger(
    name: str,
    level: Optional[int] = None,
    log_dir: Optional[Path] = None,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Create and configure a logger instance with file and console handlers.

    Configuring the package logger ("tender_harvester") is enough for every
    module: module loggers created with logging.getLogger(__name__)
    propagate to it.

    Args:
        name: Logger name
        level: Optional custom log level (defaults to config setting)
        log_dir: Optional directory override for the log file
        stream: Console stream (defaults to stdout)

    Returns:
        Configured logger instance

    Example:
        >>> logger = setup_logger("tender_harvester", level=logging.DEBUG)
        >>> logger.info("Harvest started", extra={"date_from": "2025-01-01"})
    """
    if name in _LOGGER_CACHE:
        return _LOGGER_CACHE[name]

    config = LoggerConfig(log_dir)
    logger = logging.getLogger(name)
    logger.setLevel(level or config.log_level)

    # Prevent duplicate handlers on repeated calls
    if logger.handlers:
        _LOGGER_CACHE[name] = logger
        return logger

    file_handler = RotatingFileHandler(
        filename=config.get_log_file_path(name),
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)  # Capture all levels in file
    file_handler.setFormatter(
        ContextFormatter(fmt=config.file_format, datefmt=config.date_format)
    )

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setLevel(level or config.log_level)
    console_handler.setFormatter(
        ColoredContextFormatter(
            fmt=config.console_format,
            datefmt=config.date_format,
            log_colors=LOG_COLORS,
        )
    )

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    _LOGGER_CACHE[name] = logger
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Retrieve cached logger instance or create new one.

    Args:
        name: Logger name

    Returns:
        Cached or newly created logger instance
    """
    if name in _LOGGER_CACHE:
        return _LOGGER_CACHE[name]
    return setup_logger(name)


def reset_logger(name: str) -> None:
    """Close and detach the handlers installed by setup_logger."""
    logger = _LOGGER_CACHE.pop(name, None) or logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
