"""Logging utilities for the infectio engine and its front ends."""

from __future__ import annotations

import logging
from pathlib import Path

_LOGGER_NAME = "infectio"
_CONSOLE_FORMAT = "[infectio] %(levelname)s %(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a module-scoped logger under the infectio hierarchy."""
    full_name = f"{_LOGGER_NAME}.{name}" if name else _LOGGER_NAME
    return logging.getLogger(full_name)


def resolve_level(verbose: bool, level: str | None = None) -> int:
    """Translate the CLI flag and the configured level name into a logging level."""
    if verbose:
        return logging.DEBUG
    if level:
        resolved = logging.getLevelName(level.strip().upper())
        if isinstance(resolved, int):
            return resolved
    return logging.INFO


def configure_logging(
    *,
    verbose: bool = False,
    level: str | None = None,
    log_file: Path | None = None,
) -> logging.Logger:
    """Install a console handler (and optional file sink) on the infectio logger.

    ``verbose`` wins over ``level`` so ``-v`` always produces debug output,
    including the per-task traces emitted from worker threads.
    """
    effective = resolve_level(verbose, level)
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(effective)
    logger.propagate = False

    # Reset handlers to avoid duplicate output when the CLI runs twice in one process.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(effective)
    stream_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    logger.addHandler(stream_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(effective)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        logger.addHandler(file_handler)

    return logger


__all__ = ["configure_logging", "get_logger", "resolve_level"]
