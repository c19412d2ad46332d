"""Timestamp helpers shared by the API, CLI and progress parser."""

from __future__ import annotations

from typing import Union

from .errors import ValidationError


def time_to_seconds(value: Union[str, int, float, None]) -> float:
    """Convert "HH:MM:SS", "MM:SS", "SS" (or a number) to seconds."""
    if value is None:
        raise ValidationError("time value is required")
    if isinstance(value, bool):
        raise ValidationError(f"invalid time value: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        raise ValidationError("time value is required")
    parts = text.split(":")
    if len(parts) > 3:
        raise ValidationError(f"invalid time value: {value!r}")
    try:
        numbers = [float(p) for p in parts]
    except ValueError as exc:
        raise ValidationError(f"invalid time value: {value!r}") from exc
    total = 0.0
    for n in numbers:
        total = total * 60 + n
    return total


def parse_ffmpeg_time(text: str) -> float:
    """Parse ffmpeg's "time=" field (HH:MM:SS.xx). Fractions are dropped."""
    parts = text.split(".", 1)[0].split(":")
    try:
        numbers = [int(p) for p in parts]
    except ValueError:
        return 0.0
    total = 0
    for n in numbers[-3:]:
        total = total * 60 + n
    return float(total)


def format_time(seconds: float) -> str:
    seconds = max(0, int(seconds))
    hrs, rem = divmod(seconds, 3600)
    mins, secs = divmod(rem, 60)
    if hrs > 0:
        return f"{hrs}:{mins:02d}:{secs:02d}"
    return f"{mins}:{secs:02d}"
