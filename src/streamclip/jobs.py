"""Single-flight registry of clip jobs.

One worker per fingerprint: a second start/resume for a fingerprint that
already has a live worker attaches to it and reports its progress instead
of spawning another process. All job state is mutated under one lock from
the supervisor callbacks.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .broadcast import Broadcaster, progress_event
from .config import Settings
from .errors import ResumeValidationError, ValidationError, WorkerExitError
from .fingerprint import JobFingerprint, Quality, resolve_job
from .metadata import SourceResolver
from .progress import PhaseTracker, classify_line, describe
from .resume import ArtifactState, inspect_artifact, is_partial_file, sweep_stale_partials
from .stall import StallDetector
from .timecode import format_time
from .utils import utc_iso
from .worker import ResumeContext, WorkerHandle, WorkerResult, build_clip_argv, spawn_worker

logger = logging.getLogger(__name__)

STATUS_STARTED = "started"
STATUS_IN_PROGRESS = "in_progress"
STATUS_READY = "ready"

MAX_FINISHED_JOBS = 500


@dataclass
class ClipJob:
    fingerprint: JobFingerprint
    handle: Optional[WorkerHandle] = None
    future: Optional["Future[WorkerResult]"] = None
    percent: float = 0.0
    message: str = "Starting"
    phase: str = "starting"
    background: bool = False
    ready: bool = False
    resumed: bool = False
    stderr_tail: str = ""
    error: Optional[Dict[str, Any]] = None
    started_at: str = field(default_factory=utc_iso)
    finished_at: Optional[str] = None
    tracker: Optional[PhaseTracker] = field(default=None, repr=False)
    stall: Optional[StallDetector] = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return self.fingerprint.id

    @property
    def output_path(self) -> Path:
        return self.fingerprint.output_path

    @property
    def active(self) -> bool:
        return self.handle is not None

    def public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.fingerprint.filename,
            "output_path": str(self.output_path),
            "percent": round(self.percent, 2),
            "message": self.message,
            "phase": self.phase,
            "background": self.background,
            "in_progress": self.active,
            "ready": self.ready,
            "resumed": self.resumed,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class ClipStartResult:
    clip_id: str
    status: str
    filename: str
    output_path: Path
    extension: str
    action: str = "start"
    percent: float = 0.0
    message: str = ""
    size_mb: Optional[float] = None
    future: Optional["Future[WorkerResult]"] = field(default=None, repr=False)

    def wait(self, timeout: Optional[float] = None) -> WorkerResult:
        """Block until the worker finishes. Raises WorkerExitError on failure."""
        if self.future is None:
            return WorkerResult(output_path=self.output_path, extension=self.extension)
        return self.future.result(timeout=timeout)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.clip_id,
            "status": self.status,
            "action": self.action,
            "filename": self.filename,
        }
        if self.status == STATUS_IN_PROGRESS:
            out["percent"] = round(self.percent, 2)
            out["message"] = self.message
        if self.size_mb is not None:
            out["sizeMB"] = self.size_mb
        return out


def wait_for_file(path: Path, timeout: float = 5.0, poll: float = 0.2) -> bool:
    deadline = time.monotonic() + timeout
    while True:
        if Path(path).exists():
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(poll)


def find_fallback_output(fp: JobFingerprint) -> Optional[Path]:
    """Newest finished file for this clip id when the worker picked another extension."""
    directory = fp.output_path.parent
    if not directory.is_dir():
        return None
    candidates = [
        p
        for p in directory.glob(f"*_clip_{fp.id}.*")
        if p.is_file() and not is_partial_file(p) and not p.name.endswith(".log")
    ]
    if not candidates:
        return None
    candidates.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    return candidates[0]


class ClipRegistry:
    def __init__(
        self,
        settings: Settings,
        broadcaster: Broadcaster,
        *,
        resolver: Optional[SourceResolver] = None,
        spawn: Callable[..., WorkerHandle] = spawn_worker,
        argv_builder: Callable[..., List[str]] = build_clip_argv,
        max_finished: int = MAX_FINISHED_JOBS,
    ) -> None:
        self.settings = settings
        self.broadcaster = broadcaster
        self.resolver = resolver
        self._spawn = spawn
        self._argv_builder = argv_builder
        self._active: Dict[str, ClipJob] = {}
        self._finished: "OrderedDict[str, ClipJob]" = OrderedDict()
        self._max_finished = max_finished
        self._lock = threading.Lock()

    # -- identity ---------------------------------------------------------

    def fingerprint(self, source: str, start: float, end: float, quality: Any = Quality.BEST) -> JobFingerprint:
        return resolve_job(source, start, end, quality, temp_dir=self.settings.temp_dir)

    def _limits(self) -> Dict[str, Any]:
        return {
            "min_bytes": self.settings.resume_min_bytes,
            "stale_age_seconds": self.settings.stale_age_seconds,
            "stale_max_bytes": self.settings.stale_max_bytes,
        }

    # -- operations -------------------------------------------------------

    def start(
        self,
        source: str,
        start: float,
        end: float,
        quality: Any = Quality.BEST,
        background: bool = False,
    ) -> ClipStartResult:
        """Start (or join, or short-circuit) a clip job."""
        fp = self.fingerprint(source, start, end, quality)
        if self.resolver is not None:
            self._check_source(fp)
        return self._launch(fp, background=background)

    def resume(
        self,
        source: str,
        start: float,
        end: float,
        quality: Any = Quality.BEST,
        background: bool = True,
    ) -> ClipStartResult:
        """Continue a previously failed clip from its partial file, if usable."""
        fp = self.fingerprint(source, start, end, quality)
        return self._launch(fp, background=background)

    def _check_source(self, fp: JobFingerprint) -> None:
        assert self.resolver is not None
        info = self.resolver(fp.source)
        if info.is_live:
            raise ValidationError("Source appears to be a live stream. Use a recording to capture live streams.")
        if info.duration_seconds and fp.end > info.duration_seconds:
            raise ValidationError(f"End time exceeds source duration ({int(info.duration_seconds)}s)")

    def _launch(self, fp: JobFingerprint, *, background: bool) -> ClipStartResult:
        with self._lock:
            running = self._active.get(fp.id)
            if running is not None:
                logger.info("Clip %s already in progress (%.1f%%); attaching", fp.id, running.percent)
                return self._result(fp, STATUS_IN_PROGRESS, "attach", running.future, running.percent, running.message)

            inspection = inspect_artifact(fp, **self._limits())
            if inspection.state is ArtifactState.COMPLETE:
                logger.info("Clip %s already complete (%.2f MB)", fp.id, inspection.verdict.size_mb)
                result = self._result(fp, STATUS_READY, "ready", None, 100.0, "Complete")
                result.size_mb = inspection.verdict.size_mb
                return result

            resume_ctx: Optional[ResumeContext] = None
            if inspection.state is ArtifactState.PARTIAL and inspection.path is not None:
                verdict = inspection.verdict
                if verdict.resumable:
                    resume_ctx = ResumeContext(size_bytes=verdict.size_bytes, age_seconds=verdict.age_seconds)
                    logger.info("Clip %s: resuming from %s", fp.id, resume_ctx.describe())
                else:
                    rejected = ResumeValidationError(inspection.path, verdict.reason)
                    logger.warning("%s; deleting and starting fresh", rejected)
                    try:
                        inspection.path.unlink()
                    except OSError as exc:
                        logger.warning("Failed to delete rejected partial %s: %s", inspection.path, exc)

            self.settings.temp_dir.mkdir(parents=True, exist_ok=True)
            job = ClipJob(
                fingerprint=fp,
                background=background,
                resumed=resume_ctx is not None,
                tracker=PhaseTracker(fp.duration),
                message="Resuming" if resume_ctx else "Starting",
            )
            handle = self._spawn(
                self._argv_builder(fp, self.settings),
                output_path=fp.output_path,
                extension=fp.extension,
                on_line=partial(self._on_line, job),
                on_exit=partial(self._on_exit, job),
                log_path=fp.log_path,
                resume_context=resume_ctx,
                stderr_max_bytes=self.settings.stderr_max_bytes,
                min_resume_bytes=self.settings.resume_min_bytes,
                name=f"yt-dlp[{fp.id}]",
            )
            job.handle = handle
            job.future = handle.future
            job.stall = StallDetector(
                fp.id,
                poll_interval=self.settings.stall_poll_seconds,
                stall_timeout=self.settings.stall_timeout_seconds,
            ).start()
            self._active[fp.id] = job
            self._finished.pop(fp.id, None)
            self.broadcaster.publish(progress_event(0, job.message, phase=job.phase, clip_id=fp.id))

        action = "resume" if resume_ctx else "start"
        logger.info(
            "Clip %s %s: %s to %s", fp.id, "resumed" if resume_ctx else "started", format_time(fp.start), format_time(fp.end)
        )
        return self._result(fp, STATUS_STARTED, action, handle.future, 0.0, job.message)

    @staticmethod
    def _result(
        fp: JobFingerprint,
        status: str,
        action: str,
        future: Optional["Future[WorkerResult]"],
        percent: float,
        message: str,
    ) -> ClipStartResult:
        return ClipStartResult(
            clip_id=fp.id,
            status=status,
            filename=fp.filename,
            output_path=fp.output_path,
            extension=fp.extension,
            action=action,
            percent=percent,
            message=message,
            future=future,
        )

    # -- supervisor callbacks ----------------------------------------------

    def _on_line(self, job: ClipJob, stream: str, line: str) -> None:
        progress = classify_line(line)
        if progress is None:
            return
        with self._lock:
            if job.finished_at is not None or job.tracker is None:
                return
            previous = job.percent
            phase, pct, advanced = job.tracker.update(progress)
            job.percent = pct
            job.message = describe(progress)
            job.phase = phase
            self.broadcaster.publish(progress_event(pct, job.message, phase=phase, clip_id=job.id))
        if advanced and job.stall is not None:
            job.stall.mark_progress(pct)
        if int(pct) != int(previous):
            logger.debug("Clip %s %s %.1f%% %s", job.id, phase, pct, job.message)

    def _on_exit(self, job: ClipJob, returncode: int, error: Optional[WorkerExitError]) -> None:
        with self._lock:
            stall = job.stall
            handle = job.handle
            cancelled = handle is not None and handle.cancel_token.cancelled
            job.stderr_tail = handle.stderr_tail() if handle is not None else ""
            job.handle = None
            job.finished_at = utc_iso()
            if error is None:
                job.percent = 100.0
                job.message = "Complete"
                job.phase = "complete"
                job.ready = True
            else:
                job.message = "Cancelled" if cancelled else "Error"
                job.phase = "cancelled" if cancelled else "error"
                job.error = error.to_dict()
            if self._active.get(job.id) is job:
                del self._active[job.id]
            self._finished[job.id] = job
            while len(self._finished) > self._max_finished:
                self._finished.popitem(last=False)
            self.broadcaster.publish(progress_event(job.percent, job.message, phase=job.phase, clip_id=job.id))
        if stall is not None:
            stall.stop()
        if error is None:
            logger.info("Clip %s created successfully", job.id)
        elif job.fingerprint.partial_path.exists():
            logger.info("Preserving partial file for resume: %s", job.fingerprint.partial_path)

    # -- queries ------------------------------------------------------------

    def status(self, source: str, start: float, end: float, quality: Any = Quality.BEST) -> Dict[str, Any]:
        fp = self.fingerprint(source, start, end, quality)
        inspection = inspect_artifact(fp, **self._limits())
        with self._lock:
            job = self._active.get(fp.id) or self._finished.get(fp.id)
            in_progress = fp.id in self._active
            snapshot = job.public() if job is not None else {}

        has_log = fp.log_path.exists()
        log_snippet = ""
        if has_log:
            try:
                lines = fp.log_path.read_text(encoding="utf-8", errors="replace").strip().splitlines()
                log_snippet = "\n".join(lines[-20:])
            except OSError as exc:
                logger.debug("Could not read %s: %s", fp.log_path, exc)

        verdict = inspection.verdict
        exists = inspection.state is not ArtifactState.ABSENT
        return {
            "clip_id": fp.id,
            "exists": exists,
            "complete": inspection.state is ArtifactState.COMPLETE,
            "is_partial": inspection.state is ArtifactState.PARTIAL,
            "size_bytes": verdict.size_bytes,
            "size_mb": verdict.size_mb,
            "resumable": verdict.resumable,
            "resume_reason": verdict.reason,
            "in_progress": in_progress,
            "percent": snapshot.get("percent", 0),
            "message": snapshot.get("message", ""),
            "phase": snapshot.get("phase"),
            "error": snapshot.get("error"),
            "filename": fp.filename,
            "has_log": has_log,
            "log_path": str(fp.log_path) if has_log else None,
            "log_snippet": log_snippet,
        }

    def get(self, clip_id: str) -> Optional[ClipJob]:
        with self._lock:
            return self._active.get(clip_id) or self._finished.get(clip_id)

    def is_active(self, clip_id: str) -> bool:
        with self._lock:
            return clip_id in self._active

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._active)

    def cancel(self, clip_id: str, reason: str = "caller_request") -> bool:
        with self._lock:
            job = self._active.get(clip_id)
            handle = job.handle if job is not None else None
        if handle is None:
            return False
        handle.cancel(reason)
        return True

    def deliverable(self, result: ClipStartResult, timeout: Optional[float] = None) -> Optional[Path]:
        """Path of the finished file for a completed start, or None."""
        timeout = self.settings.file_wait_seconds if timeout is None else timeout
        if wait_for_file(result.output_path, timeout=timeout):
            return result.output_path
        fp = self.fingerprint_for(result.clip_id)
        if fp is not None:
            fallback = find_fallback_output(fp)
            if fallback is not None:
                logger.info("Found fallback output file: %s", fallback)
                return fallback
        return None

    def fingerprint_for(self, clip_id: str) -> Optional[JobFingerprint]:
        job = self.get(clip_id)
        return job.fingerprint if job is not None else None

    def artifact_path(self, clip_id: str) -> Optional[Path]:
        """Finished file for a clip id, looked up in memory then on disk."""
        fp = self.fingerprint_for(clip_id)
        if fp is not None and fp.output_path.exists():
            return fp.output_path
        directory = self.settings.temp_dir
        if not directory.is_dir():
            return None
        for path in sorted(directory.glob(f"*_clip_{clip_id}.*")):
            if path.is_file() and not is_partial_file(path) and not path.name.endswith(".log"):
                return path
        return None

    def log_path(self, clip_id: str) -> Optional[Path]:
        fp = self.fingerprint_for(clip_id)
        if fp is not None:
            return fp.log_path if fp.log_path.exists() else None
        directory = self.settings.temp_dir
        if not directory.is_dir():
            return None
        for path in sorted(directory.glob(f"*_clip_{clip_id}.*.yt-dlp.log")):
            return path
        return None

    def sweep_stale_partials(self) -> int:
        active = self.active_ids()

        def is_active(path: Path) -> bool:
            return any(f"_clip_{clip_id}." in path.name for clip_id in active)

        return sweep_stale_partials(
            self.settings.temp_dir,
            is_active=is_active,
            min_bytes=self.settings.resume_min_bytes,
            stale_age_seconds=self.settings.stale_age_seconds,
            stale_max_bytes=self.settings.stale_max_bytes,
        )

    def shutdown(self) -> None:
        with self._lock:
            handles = [job.handle for job in self._active.values() if job.handle is not None]
        for handle in handles:
            handle.cancel("shutdown")
