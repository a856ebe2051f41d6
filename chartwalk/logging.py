"""Logging utilities for chartwalk runs."""

from __future__ import annotations

import logging
from pathlib import Path

_LOGGER_NAME = "chartwalk"

# Workers log concurrently; the thread name tells branches apart.
_CONSOLE_FORMAT = "[chartwalk] %(levelname)s %(message)s"
_CONSOLE_VERBOSE_FORMAT = "[chartwalk] %(levelname)s %(threadName)s %(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a module-scoped logger under the chartwalk hierarchy."""
    full_name = f"{_LOGGER_NAME}.{name}" if name else _LOGGER_NAME
    return logging.getLogger(full_name)


def configure_logging(
    *, verbose: bool = False, log_file: Path | None = None
) -> logging.Logger:
    """Send chartwalk logs to stderr and, when ``log_file`` is set, to that file.

    The file always records at DEBUG level so a CI artifact holds the full
    walk even when the console only shows INFO.
    """
    console_level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(
        logging.Formatter(_CONSOLE_VERBOSE_FORMAT if verbose else _CONSOLE_FORMAT)
    )
    logger.addHandler(console)

    if log_file is None:
        logger.setLevel(console_level)
        return logger

    log_file.parent.mkdir(parents=True, exist_ok=True)
    sink = logging.FileHandler(log_file, mode="w", encoding="utf-8")
    sink.setLevel(logging.DEBUG)
    sink.setFormatter(logging.Formatter(_FILE_FORMAT))
    logger.addHandler(sink)
    logger.setLevel(logging.DEBUG)
    return logger


__all__ = ["configure_logging", "get_logger"]
