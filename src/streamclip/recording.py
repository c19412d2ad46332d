"""Live-stream recordings.

A recording runs yt-dlp into an MPEG-TS file until it is stopped, hits its
maximum duration, or the worker exits on its own. Every recording passes
through exactly one terminal transition; that transition remuxes the
capture to MP4, schedules its cleanup and broadcasts the final status.
"""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .broadcast import Broadcaster, recording_progress_event, recording_removed_event, recording_status_event
from .cleanup import CleanupScheduler
from .config import Settings
from .errors import (
    RecordingNotFoundError,
    RecordingStateError,
    RemuxError,
    SourceLookupError,
    ValidationError,
    WorkerExitError,
)
from .fingerprint import Quality, validate_range
from .metadata import SourceResolver
from .remux import cut_segment, remux_copy
from .timecode import format_time
from .utils import file_size, safe_stem, size_mb, utc_iso
from .worker import WorkerHandle, build_recording_argv, signal_name, spawn_worker

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2000

STOP_CALLER = "caller"
STOP_MAX_DURATION = "max_duration"


class RecordingStatus(str, Enum):
    RECORDING = "recording"
    FINISHED = "finished"
    STOPPED = "stopped"


def new_recording_id() -> str:
    return f"rec_{int(time.time() * 1000)}_{random.randint(0, 9999)}"


@dataclass
class Recording:
    id: str
    source_ref: str
    title: str
    output_path: Path
    quality: str = Quality.BEST.value
    max_duration_seconds: float = 0
    status: RecordingStatus = RecordingStatus.RECORDING
    started_at: str = field(default_factory=utc_iso)
    ended_at: Optional[str] = None
    size_bytes: int = 0
    exit_code: Optional[int] = None
    exit_signal: Optional[str] = None
    stderr_tail: str = ""
    error: Optional[Dict[str, Any]] = None
    remuxed: bool = False
    handle: Optional[WorkerHandle] = field(default=None, repr=False)
    stop_requested: Optional[str] = None
    started_monotonic: float = field(default_factory=time.monotonic, repr=False)
    exited: threading.Event = field(default_factory=threading.Event, repr=False)
    settled: threading.Event = field(default_factory=threading.Event, repr=False)

    def elapsed_seconds(self) -> int:
        return int(time.monotonic() - self.started_monotonic)

    @property
    def download_name(self) -> str:
        return f"{self.title or 'recording'}{self.output_path.suffix}"

    def public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "title": self.title,
            "source": self.source_ref,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "elapsed": self.elapsed_seconds(),
            "sizeBytes": self.size_bytes,
            "sizeMB": f"{size_mb(self.size_bytes):.2f}",
            "outPath": str(self.output_path),
            "maxDuration": self.max_duration_seconds,
            "exitCode": self.exit_code,
            "exitSignal": self.exit_signal,
            "remuxed": self.remuxed,
            "error": self.error,
        }


class RecordingManager:
    def __init__(
        self,
        settings: Settings,
        broadcaster: Broadcaster,
        cleanup: CleanupScheduler,
        *,
        resolver: Optional[SourceResolver] = None,
        spawn: Callable[..., WorkerHandle] = spawn_worker,
        argv_builder: Callable[..., List[str]] = build_recording_argv,
        remux: Callable[..., Path] = remux_copy,
        cutter: Callable[..., Path] = cut_segment,
    ) -> None:
        self.settings = settings
        self.broadcaster = broadcaster
        self.cleanup = cleanup
        self.resolver = resolver
        self._spawn = spawn
        self._argv_builder = argv_builder
        self._remux = remux
        self._cutter = cutter
        self._recordings: Dict[str, Recording] = {}
        self._lock = threading.Lock()

    def _get(self, rec_id: str) -> Recording:
        rec = self._recordings.get(rec_id)
        if rec is None:
            raise RecordingNotFoundError(f"Recording not found: {rec_id}")
        return rec

    def _title_for(self, source_ref: str) -> str:
        if self.resolver is None:
            return "recording"
        try:
            info = self.resolver(source_ref)
        except SourceLookupError as exc:
            logger.warning("Could not look up title for %s: %s", source_ref, exc)
            return "recording"
        return info.title or "recording"

    def start(
        self,
        source_ref: str,
        quality: Any = Quality.BEST,
        max_duration_seconds: float = 0,
        title: Optional[str] = None,
    ) -> Recording:
        source_ref = (source_ref or "").strip()
        if not source_ref:
            raise ValidationError("source is required")
        try:
            max_duration = float(max_duration_seconds or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError("maxDuration must be a number of seconds") from exc
        if not math.isfinite(max_duration) or max_duration < 0:
            raise ValidationError("maxDuration must be a non-negative number of seconds")
        q = Quality.parse(quality)
        if title is None:
            title = self._title_for(source_ref)
        elif not isinstance(title, str):
            if isinstance(title, (dict, list, bool)):
                raise ValidationError("title must be a string")
            title = str(title)

        rec_id = new_recording_id()
        self.settings.temp_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.settings.temp_dir / f"{safe_stem(title, 'recording')}_{rec_id}.ts"
        rec = Recording(
            id=rec_id,
            source_ref=source_ref,
            title=title,
            output_path=output_path,
            quality=q.value,
            max_duration_seconds=max_duration,
        )

        with self._lock:
            rec.handle = self._spawn(
                self._argv_builder(source_ref, output_path, self.settings, q.value),
                output_path=output_path,
                extension="ts",
                on_line=partial(self._on_line, rec),
                on_exit=partial(self._on_exit, rec),
                stderr_max_bytes=STDERR_TAIL_CHARS,
                name=f"recording[{rec_id}]",
            )
            self._recordings[rec_id] = rec
            self.broadcaster.publish(recording_status_event(rec_id, rec.status.value, title=title))

        threading.Thread(target=self._sample, args=(rec,), name=f"rec-sampler-{rec_id}", daemon=True).start()
        logger.info("Recording %s started: %s -> %s", rec_id, source_ref, output_path.name)
        return rec

    def _on_line(self, rec: Recording, stream: str, line: str) -> None:
        if stream == "stderr":
            logger.debug("[%s] %s", rec.id, line)

    def _sample(self, rec: Recording) -> None:
        """Track file size, broadcast progress and enforce max duration."""
        last_broadcast = 0.0
        kill_deadline: Optional[float] = None
        while not rec.exited.wait(self.settings.sample_interval_seconds):
            size = file_size(rec.output_path)
            now = time.monotonic()
            with self._lock:
                if rec.status is not RecordingStatus.RECORDING:
                    break
                rec.size_bytes = size
                if now - last_broadcast >= self.settings.broadcast_interval_seconds:
                    last_broadcast = now
                    self.broadcaster.publish(
                        recording_progress_event(rec.id, rec.status.value, rec.elapsed_seconds(), size_mb(size))
                    )

            if kill_deadline is not None:
                if now >= kill_deadline:
                    self._kill(rec, "max duration stop timed out")
                    kill_deadline = None
                continue
            if rec.max_duration_seconds and rec.elapsed_seconds() >= rec.max_duration_seconds:
                if self._request_stop(rec, STOP_MAX_DURATION):
                    logger.info("Recording %s reached max duration (%ss)", rec.id, rec.max_duration_seconds)
                    kill_deadline = now + self.settings.stop_timeout_seconds

    def _request_stop(self, rec: Recording, reason: str) -> bool:
        with self._lock:
            if rec.status is not RecordingStatus.RECORDING or rec.stop_requested == STOP_CALLER:
                return False
            if rec.stop_requested == reason:
                return False
            rec.stop_requested = reason
            handle = rec.handle
        if handle is not None:
            handle.cancel(reason)
        return True

    def _kill(self, rec: Recording, reason: str) -> None:
        handle = rec.handle
        if handle is not None and not rec.exited.is_set():
            handle.cancel_token.kill(reason)

    def _on_exit(self, rec: Recording, returncode: int, error: Optional[WorkerExitError]) -> None:
        try:
            with self._lock:
                handle = rec.handle
                rec.handle = None
                rec.exit_code = returncode
                rec.exit_signal = signal_name(returncode)
                rec.ended_at = utc_iso()
                rec.stderr_tail = (handle.stderr_tail() if handle is not None else "")[-STDERR_TAIL_CHARS:]
                if rec.stop_requested == STOP_CALLER:
                    rec.status = RecordingStatus.STOPPED
                elif rec.stop_requested == STOP_MAX_DURATION or returncode == 0:
                    rec.status = RecordingStatus.FINISHED
                else:
                    rec.status = RecordingStatus.STOPPED
                    rec.error = error.to_dict() if error is not None else {"error": "worker_failed"}
                    rec.error["stderr_tail"] = rec.stderr_tail
            rec.exited.set()
            logger.info("Recording %s ended with status %s (code %s)", rec.id, rec.status.value, returncode)

            self._finalize_file(rec)
            self.cleanup.schedule(rec.id, partial(self._remove, rec.id))
            with self._lock:
                rec.size_bytes = file_size(rec.output_path)
                extra: Dict[str, Any] = {"sizeMB": f"{size_mb(rec.size_bytes):.2f}", "remuxed": rec.remuxed}
                if rec.error is not None:
                    extra["error"] = rec.error.get("message", rec.error.get("error"))
                self.broadcaster.publish(recording_status_event(rec.id, rec.status.value, **extra))
        finally:
            rec.exited.set()
            rec.settled.set()

    def _finalize_file(self, rec: Recording) -> None:
        """Remux the capture, then swap the deliverable path and drop the .ts."""
        with self._lock:
            ts_path = rec.output_path
        if ts_path.suffix != ".ts" or file_size(ts_path) == 0:
            return
        try:
            mp4_path = Path(
                self._remux(ts_path, ffmpeg=self.settings.ffmpeg_binary, timeout=self.settings.default_timeout_seconds)
            )
        except RemuxError as exc:
            logger.warning("Remux failed for %s, keeping MPEG-TS: %s", rec.id, exc)
            return
        with self._lock:
            rec.output_path = mp4_path
            rec.remuxed = True
            try:
                ts_path.unlink()
            except OSError as exc:
                logger.warning("Could not remove %s after remux: %s", ts_path, exc)
        logger.info("Remuxed recording %s to %s", rec.id, mp4_path.name)

    def stop(self, rec_id: str) -> Recording:
        """Stop a running recording and wait until it has settled.

        Raises:
            RecordingNotFoundError: unknown id.
            RecordingStateError: the recording is not running (or already stopping).
        """
        with self._lock:
            rec = self._get(rec_id)
            if rec.status is not RecordingStatus.RECORDING or rec.stop_requested == STOP_CALLER:
                raise RecordingStateError(f"Recording {rec_id} is not active (status: {rec.status.value})")
            rec.stop_requested = STOP_CALLER
            handle = rec.handle

        logger.info("Stopping recording %s", rec_id)
        if handle is not None:
            handle.cancel("stop requested")
        deadline = time.monotonic() + self.settings.stop_timeout_seconds
        while not rec.exited.wait(self.settings.stop_poll_seconds):
            if time.monotonic() >= deadline:
                logger.warning("Recording %s did not exit in %.0fs; killing", rec_id, self.settings.stop_timeout_seconds)
                self._kill(rec, "stop timed out")
                rec.exited.wait(self.settings.stop_timeout_seconds)
                break
        if not rec.settled.wait(self.settings.default_timeout_seconds):
            logger.warning("Recording %s has not settled after %.0fs", rec_id, self.settings.default_timeout_seconds)
        return rec

    def status(self, rec_id: str) -> Dict[str, Any]:
        with self._lock:
            rec = self._get(rec_id)
            if rec.status is RecordingStatus.RECORDING:
                rec.size_bytes = file_size(rec.output_path)
            return rec.public()

    def get(self, rec_id: str) -> Recording:
        with self._lock:
            return self._get(rec_id)

    def list(self) -> List[Dict[str, Any]]:
        with self._lock:
            recs = list(self._recordings.values())
        return [rec.public() for rec in recs]

    def download_path(self, rec_id: str) -> Path:
        with self._lock:
            path = self._get(rec_id).output_path
            if not path.exists():
                raise RecordingNotFoundError(f"Recorded file not found: {rec_id}")
        return path

    def clip_from_recording(self, rec_id: str, start: float, end: float) -> Path:
        """Cut [start, end) out of the captured file into a new MP4."""
        validate_range(start, end)
        with self._lock:
            rec = self._get(rec_id)
            source = rec.output_path
            if not source.exists():
                raise RecordingNotFoundError(f"Recorded file does not exist yet: {rec_id}")
        out = self.settings.temp_dir / f"{safe_stem(rec.title, 'recording')}_clip_{int(time.time() * 1000)}.mp4"
        logger.info("Clipping %s [%s, %s) from recording %s", out.name, format_time(start), format_time(end), rec_id)
        return self._cutter(
            source, out, start, end - start, ffmpeg=self.settings.ffmpeg_binary, timeout=self.settings.default_timeout_seconds
        )

    def _remove(self, rec_id: str) -> None:
        with self._lock:
            rec = self._recordings.pop(rec_id, None)
        if rec is None:
            return
        for path in {rec.output_path, rec.output_path.with_suffix(".ts")}:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Failed to delete %s: %s", path, exc)
        logger.info("Cleaned up recording %s", rec_id)
        self.broadcaster.publish(recording_removed_event(rec_id))

    def shutdown(self) -> None:
        with self._lock:
            active = [r for r in self._recordings.values() if r.handle is not None]
        for rec in active:
            if rec.handle is not None:
                rec.handle.cancel("shutdown")
