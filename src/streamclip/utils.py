"""Shared utility functions for streamclip.

This module provides common utilities used across multiple modules:
- subprocess_flags(): Windows-specific flags to hide console windows
- utc_iso(): UTC timestamp in ISO format
- safe_stem(): filesystem-safe name derived from a URL or title
"""

from __future__ import annotations

import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def subprocess_flags() -> Dict[str, Any]:
    """Return subprocess flags to hide console window on Windows.

    Usage:
        result = subprocess.run(cmd, **subprocess_flags())

    Returns:
        Dict with 'creationflags' on Windows, empty dict otherwise.
    """
    if sys.platform == "win32":
        # CREATE_NO_WINDOW = 0x08000000
        return {"creationflags": 0x08000000}
    return {}


def utc_iso() -> str:
    """Return current UTC time in ISO 8601 format.

    Returns:
        ISO formatted timestamp string like '2024-01-15T10:30:00+00:00'
    """
    return datetime.now(timezone.utc).isoformat()


def safe_stem(name: Optional[str], fallback: str = "clip", max_length: int = 80) -> str:
    """Lowercase `name` and replace anything outside [a-z0-9] with '_'."""
    stem = re.sub(r"[^a-z0-9]", "_", (name or "").lower())
    if len(stem) > max_length:
        stem = stem[:max_length]
    return stem or fallback


def file_size(path: Path) -> int:
    """Size of `path` in bytes, 0 when missing or unreadable."""
    try:
        return Path(path).stat().st_size
    except OSError:
        return 0


def size_mb(size_bytes: int) -> float:
    return round(size_bytes / (1024 * 1024), 2)
