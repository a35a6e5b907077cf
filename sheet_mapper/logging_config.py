"""Logging configuration for sheet-mapper."""

from __future__ import annotations

import logging
import sys

ROOT_LOGGER_NAME = "sheet_mapper"


def setup_logging(level: str | None = None) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to INFO.

    Returns:
        The configured ``sheet_mapper`` logger.
    """
    log_level = getattr(logging, level.upper(), logging.INFO) if level else logging.INFO

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    # stdout stays reserved for --json payloads
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    return root_logger
