"""Logging setup for the TaskQuest bot core."""

import logging
import logging.handlers
import pathlib
import sys
from typing import Optional

from taskquest.config import settings

# Guard against repeated initialization
_logging_initialized = False

# ANSI colors for the console
COLORS = {
    "DEBUG": "\033[36m",     # Cyan
    "INFO": "\033[32m",      # Green
    "WARNING": "\033[33m",   # Yellow
    "ERROR": "\033[31m",     # Red
    "CRITICAL": "\033[35m",  # Magenta
    "RESET": "\033[0m",
}


class ColoredFormatter(logging.Formatter):
    """Formatter with colored level names for the console."""

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if levelname in COLORS:
            record.levelname = f"{COLORS[levelname]}{levelname}{COLORS['RESET']}"
        result = super().format(record)
        record.levelname = levelname
        return result


class ContextFilter(logging.Filter):
    """Adds `short_name` (last component of the logger name) to records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name:
            parts = record.name.split(".")
            record.short_name = parts[-1] if len(parts) > 1 else record.name
        else:
            record.short_name = "root"
        return True

FILE_FORMAT = "[%(asctime)s] %(levelname)-8s [%(short_name)s] %(message)s"
ERROR_FORMAT = "[%(asctime)s] %(levelname)-8s [%(name)s:%(lineno)d] %(message)s\n    File: %(pathname)s"

# file name, level (None = configured level), max MB, backups, format
LOG_FILES = (
    ("taskquest.log", None, 10, 5, FILE_FORMAT),
    ("errors.log", logging.ERROR, 5, 10, ERROR_FORMAT),
    ("debug.log", logging.DEBUG, 20, 3, FILE_FORMAT),
)

NOISY_LOGGERS = ("sqlalchemy.engine", "apscheduler", "aiosqlite", "asyncio")


def _attach(root: logging.Logger, handler: logging.Handler, level: int, formatter: logging.Formatter) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())
    root.addHandler(handler)


def setup_logging(log_dir: Optional[str] = None) -> None:
    """Initialize logging: rotating main/error/debug files plus a colored console."""
    global _logging_initialized

    if _logging_initialized:
        return
    _logging_initialized = True

    directory = pathlib.Path(log_dir or settings.log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, settings.log_level, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(logging.DEBUG)

    for filename, file_level, max_mb, backups, fmt in LOG_FILES:
        handler = logging.handlers.RotatingFileHandler(
            directory / filename,
            maxBytes=max_mb * 1024 * 1024,
            backupCount=backups,
            encoding="utf-8",
        )
        _attach(root_logger, handler, file_level or level, logging.Formatter(fmt, datefmt="%Y-%m-%d %H:%M:%S"))

    _attach(
        root_logger,
        logging.StreamHandler(sys.stdout),
        level,
        ColoredFormatter(FILE_FORMAT, datefmt="%H:%M:%S"),
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info(f"Logging: level={settings.log_level} | dir={directory.absolute()}")
