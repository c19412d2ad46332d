"""Centralized logging configuration for streamclip.

Usage:
    from streamclip.logging_config import setup_logging_from_env
    setup_logging_from_env()  # Call once at startup

    # Then in any module:
    import logging
    log = logging.getLogger(__name__)

Environment:
    SC_LOG_LEVEL          root level for the "streamclip" logger (default INFO)
    SC_LOG_FILE           optional path of an extra log file
    SC_LOG_MODULE_LEVELS  per-module overrides, e.g. "worker=DEBUG,jobs=INFO"
"""

from __future__ import annotations

import logging
import os
import re
import sys
from pathlib import Path
from typing import Dict, Optional

ROOT_LOGGER = "streamclip"
DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_CONFIGURED = False


def parse_module_levels(text: str) -> Dict[str, int]:
    """Parse "name=LEVEL" pairs separated by commas or semicolons.

    Names are prefixed with "streamclip." unless they already carry it.
    Entries with an unknown level or no separator are skipped.
    """
    out: Dict[str, int] = {}
    for part in re.split(r"[;,]+", text or ""):
        name, sep, level_str = part.strip().partition("=")
        if not sep:
            name, sep, level_str = part.strip().partition(":")
        name = name.strip()
        level = getattr(logging, level_str.strip().upper(), None) if sep else None
        if not name or not isinstance(level, int):
            continue
        if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
            name = f"{ROOT_LOGGER}.{name}"
        out[name] = level
    return out


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    format_string: str = DEFAULT_FORMAT,
    module_levels: Optional[Dict[str, int]] = None,
) -> logging.Logger:
    """Attach handlers to the package logger once; later calls are no-ops."""
    global _CONFIGURED
    logger = logging.getLogger(ROOT_LOGGER)
    if _CONFIGURED:
        return logger

    formatter = logging.Formatter(format_string, datefmt="%Y-%m-%d %H:%M:%S")
    logger.setLevel(level)
    logger.handlers.clear()

    # Handlers stay at DEBUG so module overrides can go below the root level.
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    for name, lvl in (module_levels or {}).items():
        logging.getLogger(name).setLevel(lvl)

    _CONFIGURED = True
    return logger


def setup_logging_from_env() -> logging.Logger:
    level_name = os.getenv("SC_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    raw_file = os.getenv("SC_LOG_FILE", "").strip()
    return setup_logging(
        level=level if isinstance(level, int) else logging.INFO,
        log_file=Path(raw_file).expanduser() if raw_file else None,
        module_levels=parse_module_levels(os.getenv("SC_LOG_MODULE_LEVELS", "")),
    )


def reset_logging() -> None:
    """Drop handlers installed by setup_logging (used by tests)."""
    global _CONFIGURED
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    _CONFIGURED = False
