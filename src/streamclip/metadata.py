"""Source metadata lookup via the yt-dlp Python API.

The orchestrator treats this as a collaborator: anything callable as
``resolver(source_ref) -> SourceInfo`` can be passed in instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict

from .errors import SourceLookupError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceInfo:
    duration_seconds: float = 0.0
    is_live: bool = False
    title: str = ""
    canonical_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration_seconds": self.duration_seconds,
            "is_live": self.is_live,
            "title": self.title,
            "canonical_id": self.canonical_id,
        }


SourceResolver = Callable[[str], SourceInfo]


class _QuietLogger:
    def debug(self, msg: str) -> None:
        pass

    def warning(self, msg: str) -> None:
        logger.debug("yt-dlp: %s", msg)

    def error(self, msg: str) -> None:
        logger.debug("yt-dlp: %s", msg)


def info_from_dict(info: Dict[str, Any]) -> SourceInfo:
    live_status = str(info.get("live_status") or "")
    return SourceInfo(
        duration_seconds=float(info.get("duration") or 0),
        is_live=bool(info.get("is_live")) or live_status in ("is_live", "is_upcoming"),
        title=str(info.get("title") or ""),
        canonical_id=str(info.get("id") or ""),
    )


def lookup_source(source_ref: str) -> SourceInfo:
    """Resolve duration/live-status/title without downloading.

    Raises:
        SourceLookupError: yt-dlp is missing or the lookup failed.
    """
    try:
        from yt_dlp import YoutubeDL
    except ImportError as exc:
        raise SourceLookupError("yt-dlp is required for source lookups. Install with: pip install yt-dlp") from exc

    opts = {
        "quiet": True,
        "no_warnings": True,
        "skip_download": True,
        "noplaylist": True,
        "logger": _QuietLogger(),
    }
    try:
        with YoutubeDL(opts) as ydl:
            info = ydl.extract_info(source_ref, download=False)
    except Exception as exc:
        raise SourceLookupError(f"could not resolve {source_ref}: {exc}") from exc
    if not info:
        raise SourceLookupError(f"no metadata returned for {source_ref}")
    return info_from_dict(info)
