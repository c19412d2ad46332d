"""Environment checks for the external tools the orchestrator drives."""

from __future__ import annotations

import importlib.util
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import Settings
from .utils import subprocess_flags

Check = Dict[str, object]


@dataclass(frozen=True)
class DoctorReport:
    ok: bool
    checks: Dict[str, Check]


def _which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def _first_line(argv: List[str]) -> str:
    try:
        out = subprocess.check_output(argv, text=True, stderr=subprocess.STDOUT, timeout=15, **subprocess_flags())
    except (OSError, subprocess.SubprocessError) as e:
        return f"error: {type(e).__name__}: {e}"
    lines = out.splitlines()
    return lines[0].strip() if lines else ""


def check_binary(cmd: str, version_flag: str) -> Check:
    path = _which(cmd)
    if path is None:
        return {"ok": False, "required": True, "path": None, "note": f"{cmd} not found on PATH"}
    return {"ok": True, "required": True, "path": path, "version": _first_line([path, version_flag])}


def check_module(name: str, note: str) -> Check:
    installed = importlib.util.find_spec(name) is not None
    check: Check = {"ok": installed, "required": False}
    if not installed:
        check["note"] = note
    return check


def check_writable(settings: Settings) -> Check:
    directory = settings.temp_dir
    try:
        directory.mkdir(parents=True, exist_ok=True)
        marker = directory / ".doctor"
        marker.write_bytes(b"")
        marker.unlink()
    except OSError as e:
        return {"ok": False, "required": True, "path": str(directory), "note": str(e)}
    return {"ok": True, "required": True, "path": str(directory)}


def run_doctor(settings: Optional[Settings] = None) -> DoctorReport:
    settings = settings or Settings()
    checks: Dict[str, Check] = {
        "yt-dlp": check_binary(settings.worker_binary, "--version"),
        "ffmpeg": check_binary(settings.ffmpeg_binary, "-version"),
        "yt_dlp module": check_module("yt_dlp", "Source lookups need it: pip install yt-dlp"),
        "temp dir": check_writable(settings),
    }
    failed = [name for name, check in checks.items() if check["required"] and not check["ok"]]
    return DoctorReport(ok=not failed, checks=checks)
