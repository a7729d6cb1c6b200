"""
Logging Utilities
=================

Package-wide logging. Every module hangs a child logger off the
``dualbokeh`` root logger:

    from .logger import get_logger
    logger = get_logger(__name__)

The application calls ``setup_logger`` once at start-up to attach a
console handler (optionally colored) and an optional rotating log file.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional, Union

ROOT_LOGGER_NAME = "dualbokeh"

MAX_LOG_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3

_LOG_FORMAT = "%(levelname)s | %(asctime)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_initialized = False


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name for terminal output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        original = record.levelname
        color = self.COLORS.get(original, self.RESET)
        record.levelname = f"{color}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def setup_logger(
    level: int = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
    use_color: bool = True
) -> logging.Logger:
    """
    Configure the package root logger. Call once at application start-up.

    Calling it again only updates the level of the existing handlers.

    Args:
        level: Logging level for the console handler
        log_file: Optional path of a rotating log file (always DEBUG)
        use_color: Color the level names on the console

    Returns:
        The configured root logger
    """
    global _initialized

    logger = logging.getLogger(ROOT_LOGGER_NAME)

    if _initialized:
        set_log_level(level)
        return logger

    logger.setLevel(logging.DEBUG if log_file else level)
    logger.propagate = False

    formatter_cls = ColoredFormatter if use_color else logging.Formatter
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter_cls(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(stream_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(file_handler)

    _initialized = True
    return logger


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """
    Get a child of the package root logger.

    ``get_logger("dualbokeh.mask")`` and ``get_logger("main")`` both end
    up under ``dualbokeh``.
    """
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def set_log_level(level: int) -> None:
    """Change the console level at runtime. File handlers stay at DEBUG."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    has_file_log = False
    for handler in root.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            has_file_log = True
            continue
        handler.setLevel(level)
    root.setLevel(logging.DEBUG if has_file_log else level)
