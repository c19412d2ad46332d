from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


# yt-dlp format selectors keyed by quality name.
QUALITY_FORMATS: Dict[str, str] = {
    "best": "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best",
    "2160": "bestvideo[height<=2160]+bestaudio/best",
    "1440": "bestvideo[height<=1440]+bestaudio/best",
    "1080": "bestvideo[height<=1080]+bestaudio/best",
    "720": "bestvideo[height<=720]+bestaudio/best",
    "480": "bestvideo[height<=480]+bestaudio/best",
    "360": "bestvideo[height<=360]+bestaudio/best",
    "audio": "bestaudio[ext=m4a]/bestaudio",
}


def _default_temp_dir() -> Path:
    if os.name == "nt":
        base = os.getenv("LOCALAPPDATA")
        if base:
            return Path(base) / "streamclip" / "temp"
        return Path.home() / "AppData" / "Local" / "streamclip" / "temp"
    return Path.home() / ".streamclip" / "temp"


def default_settings() -> Dict[str, Any]:
    return {
        "server": {
            "host": "127.0.0.1",
            "port": 3005,
        },
        "paths": {
            "temp_dir": None,  # None -> platform default
        },
        "tools": {
            "worker": "yt-dlp",
            "ffmpeg": "ffmpeg",
        },
        "worker": {
            "retries": 15,
            "fragment_retries": 20,
            "retry_sleep_seconds": 3,
            "file_access_retries": 5,
            "concurrent_fragments": 3,
            "throttled_rate": "100K",
            "stderr_max_bytes": 100 * 1024,
        },
        "recording_worker": {
            "retries": 10,
            "fragment_retries": 10,
        },
        "resume": {
            "min_bytes": 1024,
            "stale_age_seconds": 24 * 3600,
            "stale_max_bytes": 1024 * 1024,
            "sweep_interval_seconds": 6 * 3600,
        },
        "stall": {
            "poll_seconds": 30.0,
            "timeout_seconds": 120.0,
        },
        "recording": {
            "sample_interval_seconds": 1.0,
            "broadcast_interval_seconds": 1.0,
            "cleanup_delay_seconds": 30 * 60,
            "stop_poll_seconds": 0.2,
            "stop_timeout_seconds": 10.0,
        },
        "timeouts": {
            "default_seconds": 2 * 3600,
            "min_clip_seconds": 30 * 60,
            "clip_multiplier": 3.0,
            "file_wait_seconds": 30.0,
        },
        "qualities": dict(QUALITY_FORMATS),
    }


@dataclass
class Settings:
    """Flattened runtime settings handed to every component."""

    host: str = "127.0.0.1"
    port: int = 3005
    temp_dir: Path = field(default_factory=_default_temp_dir)
    worker_binary: str = "yt-dlp"
    ffmpeg_binary: str = "ffmpeg"

    retries: int = 15
    fragment_retries: int = 20
    retry_sleep_seconds: int = 3
    file_access_retries: int = 5
    concurrent_fragments: int = 3
    throttled_rate: str = "100K"
    stderr_max_bytes: int = 100 * 1024
    recording_retries: int = 10
    recording_fragment_retries: int = 10

    resume_min_bytes: int = 1024
    stale_age_seconds: float = 24 * 3600
    stale_max_bytes: int = 1024 * 1024
    sweep_interval_seconds: float = 6 * 3600

    stall_poll_seconds: float = 30.0
    stall_timeout_seconds: float = 120.0

    sample_interval_seconds: float = 1.0
    broadcast_interval_seconds: float = 1.0
    cleanup_delay_seconds: float = 30 * 60
    stop_poll_seconds: float = 0.2
    stop_timeout_seconds: float = 10.0

    default_timeout_seconds: float = 2 * 3600
    min_clip_timeout_seconds: float = 30 * 60
    clip_timeout_multiplier: float = 3.0
    file_wait_seconds: float = 30.0

    qualities: Dict[str, str] = field(default_factory=lambda: dict(QUALITY_FORMATS))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        server = data.get("server", {})
        paths = data.get("paths", {})
        tools = data.get("tools", {})
        worker = data.get("worker", {})
        rec_worker = data.get("recording_worker", {})
        resume = data.get("resume", {})
        stall = data.get("stall", {})
        rec = data.get("recording", {})
        timeouts = data.get("timeouts", {})
        temp_dir = paths.get("temp_dir")
        return cls(
            host=str(server.get("host", "127.0.0.1")),
            port=int(server.get("port", 3005)),
            temp_dir=Path(temp_dir).expanduser() if temp_dir else _default_temp_dir(),
            worker_binary=str(tools.get("worker", "yt-dlp")),
            ffmpeg_binary=str(tools.get("ffmpeg", "ffmpeg")),
            retries=int(worker.get("retries", 15)),
            fragment_retries=int(worker.get("fragment_retries", 20)),
            retry_sleep_seconds=int(worker.get("retry_sleep_seconds", 3)),
            file_access_retries=int(worker.get("file_access_retries", 5)),
            concurrent_fragments=int(worker.get("concurrent_fragments", 3)),
            throttled_rate=str(worker.get("throttled_rate", "100K")),
            stderr_max_bytes=int(worker.get("stderr_max_bytes", 100 * 1024)),
            recording_retries=int(rec_worker.get("retries", 10)),
            recording_fragment_retries=int(rec_worker.get("fragment_retries", 10)),
            resume_min_bytes=int(resume.get("min_bytes", 1024)),
            stale_age_seconds=float(resume.get("stale_age_seconds", 24 * 3600)),
            stale_max_bytes=int(resume.get("stale_max_bytes", 1024 * 1024)),
            sweep_interval_seconds=float(resume.get("sweep_interval_seconds", 6 * 3600)),
            stall_poll_seconds=float(stall.get("poll_seconds", 30.0)),
            stall_timeout_seconds=float(stall.get("timeout_seconds", 120.0)),
            sample_interval_seconds=float(rec.get("sample_interval_seconds", 1.0)),
            broadcast_interval_seconds=float(rec.get("broadcast_interval_seconds", 1.0)),
            cleanup_delay_seconds=float(rec.get("cleanup_delay_seconds", 30 * 60)),
            stop_poll_seconds=float(rec.get("stop_poll_seconds", 0.2)),
            stop_timeout_seconds=float(rec.get("stop_timeout_seconds", 10.0)),
            default_timeout_seconds=float(timeouts.get("default_seconds", 2 * 3600)),
            min_clip_timeout_seconds=float(timeouts.get("min_clip_seconds", 30 * 60)),
            clip_timeout_multiplier=float(timeouts.get("clip_multiplier", 3.0)),
            file_wait_seconds=float(timeouts.get("file_wait_seconds", 30.0)),
            qualities={str(k): str(v) for k, v in (data.get("qualities") or QUALITY_FORMATS).items()},
        )

    def format_for(self, quality: str) -> str:
        return self.qualities.get(quality) or self.qualities.get("best") or QUALITY_FORMATS["best"]

    def request_timeout_seconds(self, duration_seconds: float) -> float:
        """Deadline for a foreground clip request: a floor plus a per-second allowance."""
        return max(self.min_clip_timeout_seconds, float(duration_seconds) * self.clip_timeout_multiplier)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env(data: Dict[str, Any]) -> Dict[str, Any]:
    env_map = {
        "SC_HOST": ("server", "host"),
        "SC_PORT": ("server", "port"),
        "SC_TEMP_DIR": ("paths", "temp_dir"),
        "SC_WORKER_BINARY": ("tools", "worker"),
        "SC_FFMPEG_BINARY": ("tools", "ffmpeg"),
    }
    for env_name, (section, key) in env_map.items():
        raw = (os.getenv(env_name) or "").strip()
        if raw:
            data.setdefault(section, {})[key] = raw

    raw_minutes = (os.getenv("SC_CLEANUP_MINUTES") or "").strip()
    if raw_minutes:
        try:
            minutes = float(raw_minutes)
        except ValueError:
            logger.warning("Ignoring invalid SC_CLEANUP_MINUTES=%r (expected a number)", raw_minutes)
        else:
            if minutes > 0:
                data.setdefault("recording", {})["cleanup_delay_seconds"] = minutes * 60
            else:
                logger.warning("Ignoring non-positive SC_CLEANUP_MINUTES=%r", raw_minutes)
    return data


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Defaults, then the YAML file (if any), then SC_* environment variables."""
    data = default_settings()
    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config not found: {config_path}")
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise ValueError("Config YAML must be a mapping")
        data = _deep_merge(data, loaded)
    return Settings.from_dict(_apply_env(data))
