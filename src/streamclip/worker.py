"""Supervision of external yt-dlp worker processes.

``spawn_worker`` starts the worker in its own process group and returns
immediately with a ``WorkerHandle``: a future for the outcome and a
cancellation token for the whole process tree. Output lines from both
pipes are forwarded to a callback; the tail of stderr is kept for
diagnostics.

On failure a diagnostic log is written beside the output and the partial
artifact is left in place so a later resume can continue from it.
"""

from __future__ import annotations

import logging
import re
import signal
import subprocess
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Callable, Dict, Iterator, List, Optional

from .config import Settings
from .errors import WorkerExitError, WorkerLaunchError
from .fingerprint import JobFingerprint
from .process import ProcessGroup, spawn_group
from .utils import file_size, size_mb, utc_iso

logger = logging.getLogger(__name__)

PROGRESS_TEMPLATE = "%(progress._percent_str)s %(progress._speed_str)s"
INSTALL_HINT = "Install yt-dlp and make sure it is on PATH: https://github.com/yt-dlp/yt-dlp#installation"

_LINE_SPLIT = re.compile(rb"[\r\n]+")

LineCallback = Callable[[str, str], None]
ExitCallback = Callable[[int, Optional[WorkerExitError]], None]


@dataclass(frozen=True)
class WorkerResult:
    output_path: Path
    extension: str


@dataclass
class ResumeContext:
    """What was on disk when the worker was started."""
    size_bytes: int = 0
    age_seconds: float = 0.0

    def describe(self) -> str:
        return f"{size_mb(self.size_bytes):.2f} MB ({self.age_seconds / 60:.1f}min old)"


class CancellationToken:
    """Stops a worker's whole process tree. Cancellation is best-effort:
    callers should poll the handle rather than assume the process is gone."""

    def __init__(self, group: ProcessGroup, name: str = "worker") -> None:
        self._group = group
        self._name = name
        self._lock = threading.Lock()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def cancel(self, reason: str = "caller_request") -> None:
        with self._lock:
            if self.reason is None:
                self.reason = reason
        logger.info("Interrupting %s (pid %s): %s", self._name, self._group.pid, reason)
        self._group.interrupt()

    def kill(self, reason: str = "forced") -> None:
        with self._lock:
            if self.reason is None:
                self.reason = reason
        logger.warning("Killing %s process group (pid %s): %s", self._name, self._group.pid, reason)
        self._group.kill()


@dataclass
class WorkerHandle:
    future: "Future[WorkerResult]"
    cancel_token: CancellationToken
    pid: int
    argv: List[str] = field(default_factory=list)
    tail: Optional[_StderrTail] = None

    def stderr_tail(self) -> str:
        return self.tail.get() if self.tail is not None else ""

    def done(self) -> bool:
        return self.future.done()

    def wait(self, timeout: Optional[float] = None) -> WorkerResult:
        return self.future.result(timeout=timeout)

    def cancel(self, reason: str = "caller_request") -> None:
        self.cancel_token.cancel(reason)


class _StderrTail:
    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max_bytes
        self._text = ""
        self._lock = threading.Lock()

    def append(self, line: str) -> None:
        with self._lock:
            self._text = (self._text + line + "\n")[-self.max_bytes:]

    def get(self) -> str:
        with self._lock:
            return self._text


def iter_lines(stream: IO[bytes], chunk_size: int = 65536) -> Iterator[str]:
    """Yield decoded lines split on CR or LF (ffmpeg redraws with CR)."""
    read = getattr(stream, "read1", stream.read)
    buf = b""
    while True:
        chunk = read(chunk_size)
        if not chunk:
            break
        buf += chunk
        parts = _LINE_SPLIT.split(buf)
        buf = parts.pop()
        for part in parts:
            if part:
                yield part.decode("utf-8", errors="replace")
    if buf:
        yield buf.decode("utf-8", errors="replace")


def build_clip_argv(fp: JobFingerprint, settings: Settings) -> List[str]:
    """yt-dlp arguments for a section download with continue/no-overwrite semantics."""
    argv = [
        settings.worker_binary,
        "-f", settings.format_for(fp.quality.value),
        "--download-sections", f"*{_fmt_seconds(fp.start)}-{_fmt_seconds(fp.end)}",
        "--force-keyframes-at-cuts",
        "--retries", str(settings.retries),
        "--fragment-retries", str(settings.fragment_retries),
        "--retry-sleep", str(settings.retry_sleep_seconds),
        "--file-access-retries", str(settings.file_access_retries),
        "--continue",
        "--no-overwrites",
        "--concurrent-fragments", str(settings.concurrent_fragments),
        "--throttled-rate", settings.throttled_rate,
    ]
    if fp.extension == "mp4":
        argv += ["--merge-output-format", "mp4"]
    argv += [
        "--progress",
        "--newline",
        "--progress-template", PROGRESS_TEMPLATE,
        "-o", str(fp.output_path),
        fp.source,
    ]
    return argv


def build_recording_argv(source: str, output_path: Path, settings: Settings, quality: str = "best") -> List[str]:
    """yt-dlp arguments for capturing a live stream into MPEG-TS."""
    return [
        settings.worker_binary,
        "-f", settings.format_for(quality),
        "--hls-use-mpegts",
        "--hls-prefer-ffmpeg",
        "--retries", str(settings.recording_retries),
        "--fragment-retries", str(settings.recording_fragment_retries),
        "--no-overwrites",
        "--continue",
        "--no-part",
        "-o", str(output_path),
        source,
    ]


def _fmt_seconds(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def signal_name(returncode: Optional[int]) -> Optional[str]:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


def write_diagnostic_log(
    log_path: Path,
    *,
    returncode: Optional[int],
    signal_name: Optional[str],
    output_path: Path,
    resume_context: Optional[ResumeContext],
    stderr_tail: str,
    min_resume_bytes: int = 1024,
) -> bool:
    """Write the failure log beside the artifact. Returns the resume verdict."""
    partial = output_path.with_name(output_path.name + ".part")
    partial_size = file_size(partial) or file_size(output_path)
    resumable = partial_size >= min_resume_bytes
    header = "\n".join(
        [
            f"Exit code: {returncode} signal: {signal_name}",
            f"Timestamp: {utc_iso()}",
            f"Resume info: {resume_context.describe() if resume_context else 'new download'}",
            f"Partial file size: {size_mb(partial_size):.2f} MB",
            f"Can resume: {'yes' if resumable else 'no'}",
            "--- stderr ---",
            "",
        ]
    )
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(header + stderr_tail, encoding="utf-8")
        logger.info("Wrote worker stderr log to %s", log_path)
    except OSError as exc:
        logger.warning("Could not write diagnostic log %s: %s", log_path, exc)
    return resumable


def spawn_worker(
    argv: List[str],
    *,
    output_path: Path,
    extension: str,
    on_line: Optional[LineCallback] = None,
    on_exit: Optional[ExitCallback] = None,
    log_path: Optional[Path] = None,
    resume_context: Optional[ResumeContext] = None,
    stderr_max_bytes: int = 100 * 1024,
    min_resume_bytes: int = 1024,
    name: str = "yt-dlp",
    popen_kwargs: Optional[Dict[str, Any]] = None,
) -> WorkerHandle:
    """Start `argv` detached and supervise it on background threads.

    Raises:
        WorkerLaunchError: the executable is missing or could not be started.
    """
    logger.info("Spawning %s: %s", name, " ".join(argv))
    try:
        group = spawn_group(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            **(popen_kwargs or {}),
        )
    except FileNotFoundError as exc:
        raise WorkerLaunchError(f"{argv[0]} is not installed or not on PATH", hint=INSTALL_HINT) from exc
    except OSError as exc:
        raise WorkerLaunchError(f"failed to start {argv[0]}: {exc}", hint=INSTALL_HINT) from exc

    future: "Future[WorkerResult]" = Future()
    future.set_running_or_notify_cancel()
    token = CancellationToken(group, name=name)
    tail = _StderrTail(stderr_max_bytes)
    proc = group.proc

    def pump(stream: IO[bytes], stream_name: str) -> None:
        try:
            for line in iter_lines(stream):
                if stream_name == "stderr":
                    tail.append(line)
                if on_line is not None:
                    try:
                        on_line(stream_name, line)
                    except Exception:
                        logger.exception("%s line handler failed", name)
        finally:
            stream.close()

    readers = [
        threading.Thread(target=pump, args=(proc.stdout, "stdout"), name=f"{name}-stdout-{proc.pid}", daemon=True),
        threading.Thread(target=pump, args=(proc.stderr, "stderr"), name=f"{name}-stderr-{proc.pid}", daemon=True),
    ]
    for t in readers:
        t.start()

    def waiter() -> None:
        returncode = proc.wait()
        for t in readers:
            t.join(timeout=5.0)
        sig = signal_name(returncode)
        error: Optional[WorkerExitError] = None
        if returncode != 0:
            logger.error("%s exited with code %s signal %s", name, returncode, sig)
            resumable = False
            if log_path is not None:
                resumable = write_diagnostic_log(
                    log_path,
                    returncode=returncode,
                    signal_name=sig,
                    output_path=output_path,
                    resume_context=resume_context,
                    stderr_tail=tail.get(),
                    min_resume_bytes=min_resume_bytes,
                )
            error = WorkerExitError(
                returncode,
                signal_name=sig,
                stderr_tail=tail.get(),
                log_path=log_path,
                resumable=resumable,
            )
        if on_exit is not None:
            try:
                on_exit(returncode, error)
            except Exception:
                logger.exception("%s exit handler failed", name)
        if error is None:
            future.set_result(WorkerResult(output_path=output_path, extension=extension))
        else:
            future.set_exception(error)

    threading.Thread(target=waiter, name=f"{name}-wait-{proc.pid}", daemon=True).start()
    return WorkerHandle(future=future, cancel_token=token, pid=proc.pid, argv=list(argv), tail=tail)
