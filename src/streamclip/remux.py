"""ffmpeg adapters: container remux and segment cuts, always stream copy."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from .errors import RemuxError
from .utils import subprocess_flags

logger = logging.getLogger(__name__)


def _require_cmd(cmd: str) -> str:
    if Path(cmd).is_file():
        return cmd
    path = shutil.which(cmd)
    if not path:
        raise RemuxError(
            f"Required executable '{cmd}' not found in PATH. "
            "Install ffmpeg and ensure it is available on PATH."
        )
    return path


def _run(cmd: List[str], output_path: Path, timeout: float) -> Path:
    logger.info("Running: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            **subprocess_flags(),
        )
    except subprocess.TimeoutExpired as exc:
        raise RemuxError(f"ffmpeg timed out after {timeout:.0f}s") from exc
    except OSError as exc:
        raise RemuxError(f"failed to start ffmpeg: {exc}") from exc

    if result.returncode != 0 or not output_path.exists():
        tail = (result.stderr or "")[-2000:]
        raise RemuxError(f"ffmpeg exited with code {result.returncode}: {tail.strip()}")
    return output_path


def remux_copy(
    source_path: Path,
    output_path: Optional[Path] = None,
    *,
    ffmpeg: str = "ffmpeg",
    timeout: float = 3600,
) -> Path:
    """Rewrap `source_path` (typically MPEG-TS) into MP4 without re-encoding.

    The source is left untouched; callers delete it once they have the result.

    Raises:
        RemuxError: ffmpeg is missing, failed, or produced no output.
    """
    source_path = Path(source_path)
    exe = _require_cmd(ffmpeg)
    if output_path is None:
        output_path = source_path.with_suffix(".mp4")
    if output_path == source_path:
        output_path = source_path.parent / f"{source_path.stem}_remux.mp4"

    cmd = [
        exe, "-y",
        "-i", str(source_path),
        "-c", "copy",
        "-bsf:a", "aac_adtstoasc",
        "-movflags", "+faststart",
        str(output_path),
    ]
    return _run(cmd, output_path, timeout)


def cut_segment(
    source_path: Path,
    output_path: Path,
    start_seconds: float,
    duration_seconds: float,
    *,
    ffmpeg: str = "ffmpeg",
    timeout: float = 3600,
) -> Path:
    """Cut `[start, start + duration)` out of a local file by stream copy."""
    if duration_seconds <= 0:
        raise RemuxError("segment duration must be positive")
    exe = _require_cmd(ffmpeg)
    cmd = [
        exe, "-y",
        "-ss", f"{start_seconds:g}",
        "-i", str(source_path),
        "-t", f"{duration_seconds:g}",
        "-c", "copy",
        str(output_path),
    ]
    return _run(cmd, Path(output_path), timeout)
