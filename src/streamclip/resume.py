"""Classify on-disk clip artifacts as complete, resumable or corrupt."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .fingerprint import JobFingerprint

logger = logging.getLogger(__name__)

PARTIAL_SUFFIXES = (".part", ".ytdl")

REASON_MISSING = "missing"
REASON_TOO_SMALL = "too small"
REASON_STALE = "stale and undersized"
REASON_VALID = "valid partial"


@dataclass(frozen=True)
class ResumeVerdict:
    resumable: bool
    reason: str
    size_bytes: int = 0
    age_seconds: float = 0.0

    @property
    def size_mb(self) -> float:
        return round(self.size_bytes / (1024 * 1024), 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resumable": self.resumable,
            "reason": self.reason,
            "size_bytes": self.size_bytes,
            "size_mb": self.size_mb,
            "age_seconds": round(self.age_seconds, 1),
        }


class ArtifactState(str, Enum):
    ABSENT = "absent"
    PARTIAL = "partial"
    COMPLETE = "complete"


@dataclass(frozen=True)
class ArtifactInspection:
    state: ArtifactState
    path: Optional[Path]
    verdict: ResumeVerdict


def is_partial_file(path: Path) -> bool:
    return str(path).endswith(PARTIAL_SUFFIXES)


def validate_resumable(
    path: Path,
    *,
    min_bytes: int = 1024,
    stale_age_seconds: float = 24 * 3600,
    stale_max_bytes: int = 1024 * 1024,
    now: Optional[float] = None,
) -> ResumeVerdict:
    """Decide whether a worker may continue from `path`.

    Below `min_bytes` the file is treated as corrupt. Older than
    `stale_age_seconds` and below `stale_max_bytes` it is treated as a dead
    attempt. Anything else is resumable.
    """
    try:
        st = Path(path).stat()
    except FileNotFoundError:
        return ResumeVerdict(False, REASON_MISSING)

    now = time.time() if now is None else now
    age = max(0.0, now - st.st_mtime)
    size = st.st_size

    if size < min_bytes:
        return ResumeVerdict(False, REASON_TOO_SMALL, size, age)
    if age > stale_age_seconds and size < stale_max_bytes:
        return ResumeVerdict(False, REASON_STALE, size, age)
    return ResumeVerdict(True, REASON_VALID, size, age)


def inspect_artifact(fp: JobFingerprint, **limits: Any) -> ArtifactInspection:
    """Look at both the final path and the partial path of a fingerprint."""
    if fp.output_path.exists():
        verdict = validate_resumable(fp.output_path, **limits)
        return ArtifactInspection(ArtifactState.COMPLETE, fp.output_path, verdict)
    if fp.partial_path.exists():
        verdict = validate_resumable(fp.partial_path, **limits)
        return ArtifactInspection(ArtifactState.PARTIAL, fp.partial_path, verdict)
    return ArtifactInspection(ArtifactState.ABSENT, None, ResumeVerdict(False, REASON_MISSING))


def sweep_stale_partials(
    directory: Path,
    *,
    is_active: Callable[[Path], bool] = lambda _p: False,
    min_bytes: int = 1024,
    stale_age_seconds: float = 24 * 3600,
    stale_max_bytes: int = 1024 * 1024,
    now: Optional[float] = None,
) -> int:
    """Delete partial files rejected as stale and undersized. Returns the count."""
    directory = Path(directory)
    if not directory.is_dir():
        return 0

    deleted = 0
    for path in sorted(directory.iterdir()):
        if not path.is_file() or not is_partial_file(path) or is_active(path):
            continue
        verdict = validate_resumable(
            path,
            min_bytes=min_bytes,
            stale_age_seconds=stale_age_seconds,
            stale_max_bytes=stale_max_bytes,
            now=now,
        )
        if verdict.reason != REASON_STALE:
            continue
        try:
            path.unlink()
        except OSError as exc:
            logger.warning("Failed to delete stale partial %s: %s", path, exc)
            continue
        deleted += 1
        logger.info(
            "Cleaned up stale partial %s (%.1fh old, %d bytes)",
            path.name,
            verdict.age_seconds / 3600,
            verdict.size_bytes,
        )
    return deleted
