"""
Resolve and apply the log level.

Explicit level (CLI) takes precedence over the DEVICE_LOG_LEVEL env var; default INFO.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    return int(getattr(logging, raw, logging.INFO))


def resolve_level(explicit: Optional[str] = None) -> int:
    if explicit:
        return _parse_level(explicit)
    raw = os.environ.get("DEVICE_LOG_LEVEL", "").strip()
    return _parse_level(raw) if raw else logging.INFO


def configure_logging(explicit: Optional[str] = None) -> None:
    """Set up the root handler once and apply the resolved level to the root logger."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logging.getLogger().setLevel(resolve_level(explicit))
