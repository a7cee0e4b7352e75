"""Logging for pkgeval.

Every module logs through a child of the ``pkgeval`` logger. The console
level follows ``--verbose`` / ``--quiet``; with ``--verbose`` each console
line also names the worker thread it came from, since several sandboxes
log at once. An optional run log always records everything at DEBUG.
"""

from __future__ import annotations

import logging
from pathlib import Path

_LOGGER_NAME = "pkgeval"
_FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(threadName)s]: %(message)s"
_CONSOLE_FORMAT = "%(levelname)-8s %(message)s"
_VERBOSE_CONSOLE_FORMAT = "%(levelname)-8s [%(threadName)s] %(message)s"


def _console_handler(verbose: bool, quiet: bool) -> logging.Handler:
    handler = logging.StreamHandler()
    if verbose:
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(_VERBOSE_CONSOLE_FORMAT))
        return handler
    handler.setLevel(logging.WARNING if quiet else logging.INFO)
    handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    return handler


def _file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT))
    return handler


def reset_logging() -> None:
    """Close and detach every handler on the pkgeval logger."""
    logger = logging.getLogger(_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def setup_logging(
    *,
    verbose: bool = False,
    quiet: bool = False,
    log_file: Path | None = None,
) -> logging.Logger:
    """Install the console (and optionally file) handlers; safe to call again.

    *verbose* wins over *quiet*. Returns the ``pkgeval`` logger.
    """
    reset_logging()
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.addHandler(_console_handler(verbose, quiet))
    if log_file is not None:
        logger.addHandler(_file_handler(log_file))
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a named child logger under the pkgeval namespace."""
    return logging.getLogger(f"{_LOGGER_NAME}.{name}")
