"""Line classifier for worker output.

yt-dlp reports two independent phases on its output streams:

- fetch: ``[download]  42.1% of 10.00MiB at 1.23MiB/s`` (or the bare
  ``42.1% 1.23MiB/s`` produced by our progress template)
- transcode: ffmpeg's ``time=00:01:05.32`` while cutting the section

Percent legitimately restarts from 0 when the transcode phase begins, so
every event carries its phase and percent is only monotonic per phase.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Optional, Union

from .timecode import parse_ffmpeg_time

PHASE_FETCH = "fetch"
PHASE_TRANSCODE = "transcode"

_PERCENT_RE = re.compile(r"(?:\[download\]\s*|^\s*)([0-9]{1,3}(?:\.[0-9]+)?)%")
_SPEED_RE = re.compile(r"([0-9.]+\s?(?:K|M|G)iB/s)")
_TIME_RE = re.compile(r"time=\s*(-?[0-9:.]+)")


@dataclass(frozen=True)
class FetchProgress:
    percent: float
    speed: str = ""

    phase = PHASE_FETCH


@dataclass(frozen=True)
class TranscodeProgress:
    elapsed_seconds: float

    phase = PHASE_TRANSCODE


ProgressLine = Union[FetchProgress, TranscodeProgress]


def classify_line(line: str) -> Optional[ProgressLine]:
    """Return the progress a line reports, or None for anything else."""
    if not line:
        return None
    m = _PERCENT_RE.search(line)
    if m:
        try:
            pct = float(m.group(1))
        except ValueError:
            return None
        if pct > 100:
            return None
        speed = _SPEED_RE.search(line)
        return FetchProgress(percent=pct, speed=speed.group(1).replace(" ", "") if speed else "")
    m = _TIME_RE.search(line)
    if m:
        return TranscodeProgress(elapsed_seconds=max(0.0, parse_ffmpeg_time(m.group(1))))
    return None


def transcode_percent(elapsed_seconds: float, duration_seconds: float) -> float:
    if duration_seconds <= 0:
        return 0.0
    return max(0.0, min(100.0, elapsed_seconds / duration_seconds * 100.0))


def describe(progress: ProgressLine) -> str:
    if isinstance(progress, FetchProgress):
        return f"Downloading ({progress.speed})" if progress.speed else "Downloading"
    return "Processing"


class PhaseTracker:
    """Per-phase high-water marks for one job.

    ``update`` returns ``(phase, percent, advanced)`` where percent never
    drops below what was already reported for the same phase and
    ``advanced`` tells whether it moved forward.
    """

    def __init__(self, duration_seconds: float) -> None:
        self.duration_seconds = duration_seconds
        self._high: Dict[str, float] = {}
        self.phase: Optional[str] = None

    def update(self, progress: ProgressLine) -> tuple[str, float, bool]:
        if isinstance(progress, FetchProgress):
            pct = progress.percent
        else:
            pct = transcode_percent(progress.elapsed_seconds, self.duration_seconds)
        phase = progress.phase
        previous = self._high.get(phase)
        advanced = previous is None or pct > previous
        if previous is not None:
            pct = max(previous, pct)
        self._high[phase] = pct
        self.phase = phase
        return phase, pct, advanced

    def high_water(self, phase: str) -> float:
        return self._high.get(phase, 0.0)
