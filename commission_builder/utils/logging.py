"""Centralized logging configuration."""

import logging
import sys
from typing import Optional

ROOT_LOGGER_NAME = "commission_builder"

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _configure_root(level: str) -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER_NAME)

    # Avoid duplicate handlers
    if not root.handlers:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT))
        root.addHandler(console_handler)
        root.setLevel(getattr(logging, level.upper()))

    return root


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get a configured logger instance.

    Loggers inside the package propagate to the package root logger, which
    owns the single console handler.

    Args:
        name: Logger name (typically __name__ of the calling module)
        level: Optional log level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        logging.Logger: Configured logger instance
    """
    _configure_root(level or "INFO")
    logger = logging.getLogger(name)

    if level:
        logger.setLevel(getattr(logging, level.upper()))

    # Modules outside the package tree still get console output
    if not name.startswith(ROOT_LOGGER_NAME) and not logger.handlers:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(console_handler)

    return logger


def set_log_level(level: str) -> None:
    """Change the level of every package logger at once (used by --verbose)."""
    root = _configure_root(level)
    root.setLevel(getattr(logging, level.upper()))
