"""
Small helpers shared across the gateway.

This module provides helper functions for:
- Ensuring directory creation
- Computing the metering calendar day
- Deriving an operation name from a proxied path
- One-time logging setup
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def utc_now() -> datetime:
    """Current UTC time without tzinfo, the form timestamps are stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    """Calendar day used for daily counters (UTC, so it matches stored timestamps)."""
    return datetime.now(timezone.utc).date()


def operation_name(path: str, prefix: str) -> str:
    """
    Name of the processing operation addressed by ``path``.

    Example:
        >>> operation_name("/api/pdf/merge", "/api/pdf")
        'merge'
        >>> operation_name("/api/pdf/pdf-to-word/", "/api/pdf")
        'pdf-to-word'
    """
    path = path.split("?", 1)[0]
    if path.startswith(prefix):
        path = path[len(prefix):]
    return path.strip("/") or "unknown"


def parse_content_length(value: str | None) -> int:
    """Declared body size; missing or malformed headers count as 0."""
    if not value:
        return 0
    try:
        return max(int(value.strip()), 0)
    except ValueError:
        return 0


def configure_logging(level: str = "INFO") -> None:
    """Install a basic handler unless the host (uvicorn, pytest) already did."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logging.getLogger("pdf_gateway").setLevel(level.upper())
