"""Error taxonomy for clip and recording orchestration.

Spawn-time and validation errors are raised to the initiating caller.
Failures of background work are stored on the job or recording and only
surface through the status calls.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional


class StreamClipError(Exception):
    """Base class for all orchestrator errors."""

    code = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class ValidationError(StreamClipError, ValueError):
    """Bad source, range or quality. Raised before anything is spawned."""

    code = "validation_error"


class SourceLookupError(StreamClipError):
    """The metadata resolver could not look the source up."""

    code = "source_lookup_failed"


class WorkerLaunchError(StreamClipError):
    """The external worker could not be started at all."""

    code = "worker_launch_failed"

    def __init__(self, message: str, *, hint: str = "") -> None:
        super().__init__(message)
        self.hint = hint

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["hint"] = self.hint
        return out


class WorkerExitError(StreamClipError):
    """The worker exited non-zero. The partial artifact is kept for resume."""

    code = "worker_failed"

    def __init__(
        self,
        returncode: Optional[int],
        *,
        signal_name: Optional[str] = None,
        stderr_tail: str = "",
        log_path: Optional[Path] = None,
        resumable: bool = False,
    ) -> None:
        super().__init__(f"worker exited with code {returncode} signal {signal_name}")
        self.returncode = returncode
        self.signal_name = signal_name
        self.stderr_tail = stderr_tail
        self.log_path = log_path
        self.resumable = resumable

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out.update(
            {
                "returncode": self.returncode,
                "signal": self.signal_name,
                "resumable": self.resumable,
                "log_path": str(self.log_path) if self.log_path else None,
            }
        )
        return out


class ResumeValidationError(StreamClipError):
    """A partial artifact was rejected. Resolved by deleting it and restarting."""

    code = "resume_rejected"

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"partial file {path} is not resumable: {reason}")
        self.path = path
        self.reason = reason


class StallWarning(StreamClipError):
    """No forward progress for a while. Only ever logged."""

    code = "stalled"

    def __init__(self, job_id: str, idle_seconds: float, percent: float) -> None:
        super().__init__(
            f"job {job_id} stalled for {idle_seconds:.0f}s at {percent:.1f}% (worker retries continue)"
        )
        self.job_id = job_id
        self.idle_seconds = idle_seconds
        self.percent = percent


class RemuxError(StreamClipError):
    """Post-processing failed. The pre-remux file stays the deliverable."""

    code = "remux_failed"


class RecordingNotFoundError(StreamClipError, KeyError):
    code = "recording_not_found"

    def __str__(self) -> str:
        return Exception.__str__(self)


class RecordingStateError(StreamClipError):
    """Operation is not valid for the recording's current status."""

    code = "recording_not_active"
