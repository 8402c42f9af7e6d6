"""Centralized logging configuration for the image ingestion pipeline."""

import os
import sys
import logging
from typing import Dict, Optional

PACKAGE_LOGGER = "image-ingest"

LOG_FORMATS: Dict[str, str] = {
    "structured": (
        "%(asctime)s | %(name)s | %(levelname)-8s | "
        "%(filename)s:%(lineno)d | %(funcName)s() | %(message)s"
    ),
    "simple": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _resolve_level(level: Optional[str]) -> int:
    """Level name from the argument, else IMAGE_INGEST_LOG_LEVEL, else INFO."""
    name = level or os.getenv("IMAGE_INGEST_LOG_LEVEL", "INFO")
    resolved = logging.getLevelName(name.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logger(
    name: str = PACKAGE_LOGGER,
    level: Optional[str] = None,
    format_type: str = "structured",
) -> logging.Logger:
    """
    Setup a pipeline logger writing to stderr.

    Stdout is left to the CLI, which prints the JSON batch report there.

    Args:
        name: Logger name (defaults to "image-ingest")
        level: Log level override (defaults to env var or INFO)
        format_type: Logging format ("structured" or "simple")

    Returns:
        Configured logger instance

    Environment Variables:
        IMAGE_INGEST_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR or CRITICAL
        IMAGE_INGEST_LOG_FORMAT: "structured" or "simple", overrides ``format_type``
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(level))

    if not logger.handlers:
        format_name = os.getenv("IMAGE_INGEST_LOG_FORMAT", format_type).lower()
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                LOG_FORMATS.get(format_name, LOG_FORMATS["structured"]), datefmt=DATE_FORMAT
            )
        )
        logger.addHandler(handler)

    # Each pipeline logger owns its handler
    logger.propagate = False
    return logger


def get_logger(name: str = PACKAGE_LOGGER) -> logging.Logger:
    """
    Get a logger instance with consistent configuration.

    A logger that is already configured is returned as is, so levels set
    through ``set_log_level`` survive later lookups.

    Args:
        name: Logger name

    Returns:
        Configured logger instance
    """
    existing = logging.getLogger(name)
    if existing.handlers:
        return existing
    return setup_logger(name)


def set_log_level(level: str, name: str = PACKAGE_LOGGER) -> None:
    """Change the level of the package logger and every child logger already created."""
    log_level = _resolve_level(level)
    logging.getLogger(name).setLevel(log_level)
    for logger_name, existing in logging.Logger.manager.loggerDict.items():
        if logger_name.startswith(f"{name}.") and isinstance(existing, logging.Logger):
            existing.setLevel(log_level)


logger = setup_logger()
