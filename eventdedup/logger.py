"""
Logging configuration for the deduplication engine.

All engine modules log under the ``eventdedup`` namespace so a host
application can tune them together. Console output is colored; an optional
rotating file handler writes either plain text or JSON lines.

Usage:
    from eventdedup.logger import setup_logging, get_logger

    setup_logging(level="INFO", log_file="dedup.log")

    logger = get_logger(__name__)
    logger.info("Merged %d duplicates into %s", count, primary_id)
"""

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

ROOT_LOGGER_NAME = "eventdedup"

CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_BACKUP_COUNT = 5
DEFAULT_LOG_LEVEL = "INFO"

COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
    "RESET": "\033[0m",
}

# LogRecord attributes that are never treated as "extra" context
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class ColorFormatter(logging.Formatter):
    """Console formatter that colors the level name."""

    def format(self, record: logging.LogRecord) -> str:
        original_levelname = record.levelname
        level_color = COLORS.get(record.levelname, "")
        record.levelname = f"{level_color}{record.levelname}{COLORS['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = original_levelname


class JSONFormatter(logging.Formatter):
    """
    Formatter that emits one JSON object per record.

    Values passed through ``extra=`` (e.g. ``primary_id``, ``history_id``)
    are collected under an ``extra`` key so merge audits can be grepped out
    of the log stream.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = DEFAULT_LOG_LEVEL,
    log_file: str | None = None,
    log_dir: Path | None = None,
    log_format: str = "text",
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
) -> logging.Logger:
    """
    Configure logging for the engine.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            DEBUG shows per-pair scores and per-field resolutions.
            INFO shows detected duplicates, executed merges and batch totals.
            WARNING shows skipped values, rejected decisions and import errors.
            ERROR shows failed merges and failed batch items.
        log_file: Optional filename for file logging.
        log_dir: Directory for the log file, created if missing.
        log_format: "text" or "json" for the file handler.
        max_bytes: Size at which the log file is rotated.
        backup_count: Number of rotated files to keep.

    Returns:
        The configured ``eventdedup`` logger.
    """
    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(ColorFormatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file:
        if log_dir:
            log_path = Path(log_dir) / log_file
            log_path.parent.mkdir(parents=True, exist_ok=True)
        else:
            log_path = Path(log_file)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)

        if log_format.lower() == "json":
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    return root_logger


def setup_logging_from_config(
    logging_cfg: dict,
    config_dir: Path | None = None,
    level_override: str | None = None,
    log_file_override: Path | None = None,
) -> logging.Logger:
    """Configure logging from the ``logging`` section of a config file.

    CLI flags take precedence over file settings.
    """
    effective_level = level_override or logging_cfg.get("log_level", DEFAULT_LOG_LEVEL)
    effective_file = log_file_override or logging_cfg.get("log_file")

    return setup_logging(
        level=effective_level,
        log_file=str(effective_file) if effective_file else None,
        log_dir=config_dir if effective_file else None,
        log_format=logging_cfg.get("log_format", "text"),
        max_bytes=logging_cfg.get("max_file_size", DEFAULT_MAX_BYTES),
        backup_count=logging_cfg.get("backup_count", DEFAULT_BACKUP_COUNT),
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Engine modules pass ``__name__`` (``eventdedup.similarity`` and so on),
    which places them under the ``eventdedup`` logger configured above.
    """
    return logging.getLogger(name)
