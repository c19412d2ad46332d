"""Deterministic clip identity and output paths.

The same (source, start, end, quality) always maps to the same id and path,
which is what makes single-flight and resume work across restarts.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Union

from .errors import ValidationError
from .utils import safe_stem

PARTIAL_SUFFIX = ".part"
LOG_SUFFIX = ".yt-dlp.log"
ID_LENGTH = 12


class Quality(str, Enum):
    """Requested output quality. AUDIO produces an audio-only container."""
    BEST = "best"
    P2160 = "2160"
    P1440 = "1440"
    P1080 = "1080"
    P720 = "720"
    P480 = "480"
    P360 = "360"
    AUDIO = "audio"

    @property
    def extension(self) -> str:
        return "m4a" if self is Quality.AUDIO else "mp4"

    @classmethod
    def parse(cls, value: Union[str, "Quality", None]) -> "Quality":
        if isinstance(value, Quality):
            return value
        text = str(value or "best").strip().lower()
        if text.endswith("p") and text[:-1].isdigit():
            text = text[:-1]
        try:
            return cls(text)
        except ValueError as exc:
            raise ValidationError(f"unknown quality: {value!r}") from exc


def _number_key(value: float) -> str:
    # 10 and 10.0 must hash identically.
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


@dataclass(frozen=True)
class JobFingerprint:
    id: str
    source: str
    start: float
    end: float
    quality: Quality
    filename: str
    output_path: Path

    @property
    def extension(self) -> str:
        return self.quality.extension

    @property
    def duration(self) -> float:
        return self.end - self.start

    @property
    def partial_path(self) -> Path:
        return self.output_path.with_name(self.output_path.name + PARTIAL_SUFFIX)

    @property
    def log_path(self) -> Path:
        return self.output_path.with_name(self.output_path.name + LOG_SUFFIX)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clip_id": self.id,
            "source": self.source,
            "start": self.start,
            "end": self.end,
            "quality": self.quality.value,
            "filename": self.filename,
            "output_path": str(self.output_path),
        }


def fingerprint_id(source: str, start: float, end: float, quality: Union[str, Quality]) -> str:
    quality_value = Quality.parse(quality).value
    key = f"{source}|{_number_key(start)}|{_number_key(end)}|{quality_value}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:ID_LENGTH]


def validate_range(start: float, end: float) -> None:
    for name, value in (("start", start), ("end", end)):
        if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
            raise ValidationError(f"{name} must be a finite number")
        if value < 0:
            raise ValidationError("Times must be positive")
    if start >= end:
        raise ValidationError("Start time must be before end time")


def resolve_job(
    source: str,
    start: float,
    end: float,
    quality: Union[str, Quality] = Quality.BEST,
    *,
    temp_dir: Path,
) -> JobFingerprint:
    """Compute the fingerprint and deterministic output path for a clip request."""
    source = (source or "").strip()
    if not source:
        raise ValidationError("source is required")
    validate_range(start, end)
    q = Quality.parse(quality)
    clip_id = fingerprint_id(source, start, end, q)
    filename = f"{safe_stem(source)}_clip_{clip_id}.{q.extension}"
    return JobFingerprint(
        id=clip_id,
        source=source,
        start=float(start),
        end=float(end),
        quality=q,
        filename=filename,
        output_path=Path(temp_dir) / filename,
    )
