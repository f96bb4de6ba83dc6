"""Logging setup for the devloop command line."""
from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

ROOT_LOGGER = "devloop"


def setup_logging(
    level: str | None = None,
    log_file: Path | None = None,
) -> logging.Logger:
    """Attach a console handler and, when ``log_file`` is given, a rotating file handler.

    The level falls back to ``DEVLOOP_LOG_LEVEL`` and then INFO. Console output goes to
    stderr so that machine-readable command output on stdout stays clean.
    """
    level = level or os.getenv("DEVLOOP_LOG_LEVEL", "INFO")
    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG if log_file else log_level)

    # Avoid duplicate handlers when invoked more than once in a process
    if logger.handlers:
        return logger

    detailed_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    simple_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(simple_formatter)
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)  # file gets everything
        file_handler.setFormatter(detailed_formatter)
        logger.addHandler(file_handler)

    return logger
