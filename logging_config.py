"""
logging_config.py - Centralized logging configuration.

Every module logs through `get_logger(__name__)` using the pipe-delimited
event style used across the agent:

    extract_start | mime=image/png | bytes=48213
    validation_complete | violations=['missing_date'] | severity=minor
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(name)-20s] %(levelname)-7s %(message)s"
JSON_LOG_FORMAT = (
    '{"timestamp":"%(asctime)s","level":"%(levelname)s",'
    '"module":"%(name)s","message":"%(message)s"}'
)
DATE_FORMAT = "%H:%M:%S"

# Third-party loggers that flood INFO with per-request lines.
NOISY_LOGGERS = ("httpx", "httpcore", "openai")


def resolve_level(value: Optional[str | int], default: int = logging.INFO) -> int:
    """Map a level name ("debug", "WARNING") or number to a logging level."""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text)
    return level if isinstance(level, int) else default


def setup_logging(level: int | str = logging.INFO, json_format: bool = False) -> None:
    """Configure root logger with consistent formatting.

    Args:
        level: Logging level (number or name).
        json_format: If True, emit JSON-like log lines.
    """
    root = logging.getLogger()
    root.setLevel(resolve_level(level))
    root.handlers.clear()

    formatter = logging.Formatter(
        JSON_LOG_FORMAT if json_format else LOG_FORMAT,
        datefmt=DATE_FORMAT,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)
