"""HTTP transport: a thin FastAPI layer over an Orchestrator."""

from __future__ import annotations

import json
import logging
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from . import __version__
from .broadcast import Subscription
from .errors import (
    RecordingNotFoundError,
    RecordingStateError,
    SourceLookupError,
    StreamClipError,
    ValidationError,
    WorkerExitError,
    WorkerLaunchError,
)
from .jobs import STATUS_READY
from .metadata import lookup_source
from .orchestrator import Orchestrator
from .timecode import time_to_seconds

logger = logging.getLogger(__name__)

_STATUS_CODES = (
    (ValidationError, 400),
    (RecordingNotFoundError, 404),
    (RecordingStateError, 409),
    (WorkerLaunchError, 503),
    (SourceLookupError, 502),
    (WorkerExitError, 500),
)


def status_code_for(exc: StreamClipError) -> int:
    for exc_type, code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return code
    return 500


_MEDIA_TYPES = {".m4a": "audio/mp4", ".ts": "video/mp2t"}


def media_type_for(path: Path) -> str:
    return _MEDIA_TYPES.get(path.suffix, "video/mp4")


def sse_events(sub: Subscription, *, keepalive_seconds: float = 15.0, limit: Optional[int] = None) -> Iterator[str]:
    """Server-sent-event frames for one subscription; closes it when done."""
    sent = 0
    try:
        while not sub.closed:
            event = sub.get(timeout=keepalive_seconds)
            if event is None:
                yield ": keepalive\n\n"
                continue
            yield f"data: {json.dumps(event)}\n\n"
            sent += 1
            if limit is not None and sent >= limit:
                break
    finally:
        sub.close()


def _clip_args(data: Dict[str, Any]) -> Dict[str, Any]:
    url = str(data.get("url") or "").strip()
    if not url:
        raise ValidationError("url is required")
    return {
        "source": url,
        "start": time_to_seconds(data.get("start")),
        "end": time_to_seconds(data.get("end")),
        "quality": data.get("quality") or "best",
    }


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def create_app(orchestrator: Orchestrator) -> FastAPI:
    orch = orchestrator
    app = FastAPI(title="StreamClip", version=__version__)
    app.state.orchestrator = orch

    @app.exception_handler(StreamClipError)
    def handle_streamclip_error(request: Request, exc: StreamClipError) -> JSONResponse:
        code = status_code_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(exc.to_dict(), status_code=code)

    @app.get("/api/health")
    def api_health() -> JSONResponse:
        return JSONResponse({"ok": True, "version": __version__})

    @app.get("/api/progress")
    def api_progress() -> JSONResponse:
        """Latest clip progress event (the same payload replayed to new SSE subscribers)."""
        return JSONResponse(orch.broadcaster.last_progress)

    @app.post("/api/video-info")
    def api_video_info(body: Dict[str, Any] = Body(...)) -> JSONResponse:  # type: ignore[valid-type]
        url = str(body.get("url") or "").strip()
        if not url:
            raise ValidationError("url is required")
        info = (orch.resolver or lookup_source)(url)
        return JSONResponse(
            {
                "duration": int(info.duration_seconds),
                "title": info.title,
                "videoId": info.canonical_id,
                "isLive": info.is_live,
            }
        )

    # -------------------------------------------------------------------------
    # Clips
    # -------------------------------------------------------------------------

    @app.post("/api/clip")
    def api_clip(body: Dict[str, Any] = Body(...)):  # type: ignore[valid-type]
        """Create a clip.

        Body:
            url, start, end: source and range ("HH:MM:SS", "MM:SS" or seconds)
            quality: best|2160|1440|1080|720|480|360|audio (default best)
            background: return immediately with the job id instead of the file
        """
        args = _clip_args(body)
        background = _truthy(body.get("background", False))
        result = orch.clips.start(background=background, **args)

        if background:
            return JSONResponse(result.to_dict())

        if result.status != STATUS_READY:
            timeout = orch.settings.request_timeout_seconds(args["end"] - args["start"])
            try:
                result.wait(timeout=timeout)
            except FutureTimeout:
                raise HTTPException(status_code=504, detail="Clip processing timeout")

        path = orch.clips.deliverable(result)
        if path is None:
            raise HTTPException(status_code=500, detail="Output file not found")
        return FileResponse(str(path), media_type=media_type_for(path), filename=path.name)

    @app.get("/api/clip/status")
    def api_clip_status_get(url: str = "", start: str = "", end: str = "", quality: str = "best") -> JSONResponse:
        args = _clip_args({"url": url, "start": start, "end": end, "quality": quality})
        return JSONResponse(orch.clips.status(**args))

    @app.post("/api/clip/status")
    def api_clip_status(body: Dict[str, Any] = Body(...)) -> JSONResponse:  # type: ignore[valid-type]
        return JSONResponse(orch.clips.status(**_clip_args(body)))

    @app.post("/api/clip/resume")
    def api_clip_resume(body: Dict[str, Any] = Body(...)) -> JSONResponse:  # type: ignore[valid-type]
        result = orch.clips.resume(**_clip_args(body))
        return JSONResponse(result.to_dict())

    @app.post("/api/clip/{clip_id}/cancel")
    def api_clip_cancel(clip_id: str) -> JSONResponse:
        if not orch.clips.cancel(clip_id):
            raise HTTPException(status_code=404, detail="No active clip job with that id")
        return JSONResponse({"id": clip_id, "cancelled": True})

    @app.get("/api/clip/{clip_id}/download")
    def api_clip_download(clip_id: str) -> FileResponse:
        path = orch.clips.artifact_path(clip_id)
        if path is None:
            raise HTTPException(status_code=404, detail="Clip not found or not ready")
        return FileResponse(str(path), media_type=media_type_for(path), filename=path.name)

    @app.get("/api/clip/{clip_id}/log")
    def api_clip_log(clip_id: str) -> PlainTextResponse:
        path = orch.clips.log_path(clip_id)
        if path is None:
            raise HTTPException(status_code=404, detail="No log for this clip")
        return PlainTextResponse(path.read_text(encoding="utf-8", errors="replace"))

    # -------------------------------------------------------------------------
    # Recordings
    # -------------------------------------------------------------------------

    @app.post("/api/record/start")
    def api_record_start(body: Dict[str, Any] = Body(...)) -> JSONResponse:  # type: ignore[valid-type]
        rec = orch.recordings.start(
            str(body.get("url") or ""),
            quality=body.get("quality") or "best",
            max_duration_seconds=body.get("maxDuration", 0),
            title=body.get("title"),
        )
        return JSONResponse({"id": rec.id, "status": rec.status.value, "title": rec.title})

    @app.post("/api/record/{rec_id}/stop")
    def api_record_stop(rec_id: str) -> JSONResponse:
        rec = orch.recordings.stop(rec_id)
        return JSONResponse(rec.public())

    @app.get("/api/record/{rec_id}/status")
    def api_record_status(rec_id: str) -> JSONResponse:
        return JSONResponse(orch.recordings.status(rec_id))

    @app.get("/api/record/{rec_id}/download")
    def api_record_download(rec_id: str) -> FileResponse:
        path = orch.recordings.download_path(rec_id)
        rec = orch.recordings.get(rec_id)
        return FileResponse(str(path), media_type=media_type_for(path), filename=rec.download_name)

    @app.get("/api/records")
    def api_records() -> JSONResponse:
        return JSONResponse(orch.recordings.list())

    @app.post("/api/clip-from-recording")
    def api_clip_from_recording(body: Dict[str, Any] = Body(...)) -> FileResponse:  # type: ignore[valid-type]
        rec_id = str(body.get("id") or "")
        if not rec_id:
            raise ValidationError("Missing recording id")
        start = time_to_seconds(body.get("start"))
        end = time_to_seconds(body.get("end"))
        path = orch.recordings.clip_from_recording(rec_id, start, end)
        return FileResponse(
            str(path),
            media_type="video/mp4",
            filename=path.name,
            background=BackgroundTask(path.unlink, missing_ok=True),
        )

    # -------------------------------------------------------------------------
    # Config / events
    # -------------------------------------------------------------------------

    @app.get("/api/config/cleanup-timeout")
    def api_cleanup_timeout() -> JSONResponse:
        return JSONResponse({"minutes": orch.cleanup_timeout_minutes})

    @app.post("/api/config/cleanup-timeout")
    def api_set_cleanup_timeout(body: Dict[str, Any] = Body(...)) -> JSONResponse:  # type: ignore[valid-type]
        minutes = orch.set_cleanup_timeout(body.get("minutes"))
        return JSONResponse({"minutes": minutes})

    @app.get("/api/events")
    def api_events() -> StreamingResponse:
        """SSE stream of clip progress and recording events."""
        sub = orch.broadcaster.subscribe()
        return StreamingResponse(sse_events(sub), media_type="text/event-stream")

    return app
