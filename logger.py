"""Logging configuration for the EVS balance bot.

One shared logger, written to a dated file and (when attached to a terminal)
the console. Every record passes through a redaction filter so bearer tokens,
cookies and password fields never reach disk.
"""

import logging
import sys
from datetime import datetime

from config import LOG_DIR, EVS_DEBUG
from utils.log_sanitizer import sanitize_log

LOGGER_NAME = "evs_bot"


class RedactingFilter(logging.Filter):
    """Rewrite the rendered message with secrets replaced by placeholders."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = sanitize_log(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(debug: bool = EVS_DEBUG) -> logging.Logger:
    """Set up logging to both file and console."""
    level = logging.DEBUG if debug else logging.INFO
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Clear any existing handlers
    logger.handlers.clear()
    logger.filters.clear()
    logger.addFilter(RedactingFilter())

    log_file = LOG_DIR / f"{datetime.now().strftime('%Y-%m-%d')}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))
    logger.addHandler(file_handler)

    if sys.stdout is not None and sys.stdout.isatty():
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(message)s",
            datefmt="%H:%M:%S"
        ))
        logger.addHandler(console_handler)

    return logger


# Global logger instance
logger = setup_logging()
