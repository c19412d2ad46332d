from __future__ import annotations

import argparse
import json
import logging
import shutil
import sys
from pathlib import Path
from typing import List, Optional

from .config import Settings, load_settings
from .doctor import run_doctor
from .errors import StreamClipError
from .logging_config import setup_logging_from_env
from .metadata import lookup_source
from .orchestrator import Orchestrator
from .timecode import time_to_seconds

logger = logging.getLogger(__name__)


def _settings(args: argparse.Namespace) -> Settings:
    settings = load_settings(args.config)
    if getattr(args, "temp_dir", None):
        settings.temp_dir = Path(args.temp_dir).expanduser()
    return settings


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    from .api import create_app

    settings = _settings(args)
    host = args.host or settings.host
    port = args.port or settings.port

    orch = Orchestrator(settings, resolver=lookup_source).start()
    app = create_app(orch)
    logger.info("Serving on http://%s:%s (temp dir %s)", host, port, settings.temp_dir)
    try:
        config = uvicorn.Config(app, host=host, port=port, log_level="info", access_log=False)
        server = uvicorn.Server(config)
        server.run()
    finally:
        orch.shutdown()


def cmd_clip(args: argparse.Namespace) -> None:
    settings = _settings(args)
    start = time_to_seconds(args.start)
    end = time_to_seconds(args.end)
    resolver = None if args.no_lookup else lookup_source

    with Orchestrator(settings, resolver=resolver) as orch:
        sub = orch.broadcaster.subscribe(replay_progress=False)
        try:
            result = orch.clips.start(args.url, start, end, args.quality)
            if result.future is not None:
                while not result.future.done():
                    event = sub.get(timeout=0.5)
                    if event is not None and event.get("id") == result.clip_id:
                        pct = int(event.get("percent", 0))
                        print(f"\r{pct:3d}% {event.get('message', ''):30s}", end="", flush=True)
                print()
            result.wait()
        except StreamClipError as exc:
            print(f"\nFailed: {exc}", file=sys.stderr)
            raise SystemExit(1)
        finally:
            sub.close()

        path = orch.clips.deliverable(result)
        if path is None:
            print("Failed: output file not found", file=sys.stderr)
            raise SystemExit(1)
        if args.out is not None:
            args.out.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, args.out)
            path = args.out
        print("Done:", path)


def cmd_status(args: argparse.Namespace) -> None:
    settings = _settings(args)
    orch = Orchestrator(settings)
    status = orch.clips.status(args.url, time_to_seconds(args.start), time_to_seconds(args.end), args.quality)
    print(json.dumps(status, indent=2))


def cmd_doctor(args: argparse.Namespace) -> None:
    report = run_doctor(_settings(args))
    width = max(len(name) for name in report.checks)
    for name, check in report.checks.items():
        mark = "ok" if check["ok"] else ("MISSING" if check["required"] else "optional")
        detail = check.get("version") or check.get("note") or check.get("path") or ""
        print(f"{name:<{width}}  {mark:<8}  {detail}")
    if not report.ok:
        print("\nRequired tools are missing; clips and recordings will fail.", file=sys.stderr)
        raise SystemExit(1)


def _add_clip_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("url")
    p.add_argument("start", help="HH:MM:SS, MM:SS or seconds")
    p.add_argument("end", help="HH:MM:SS, MM:SS or seconds")
    p.add_argument("--quality", default="best", help="best, 2160, 1440, 1080, 720, 480, 360 or audio")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="streamclip", description="Clip and record online video streams")
    parser.add_argument("--config", type=Path, default=None, help="Path to a YAML config file")
    parser.add_argument("--temp-dir", default=None, help="Override the working directory for clips and recordings")
    sub = parser.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("serve", help="Run the HTTP API.")
    s.add_argument("--host", default=None)
    s.add_argument("--port", type=int, default=None)
    s.set_defaults(func=cmd_serve)

    c = sub.add_parser("clip", help="Create one clip in the foreground.")
    _add_clip_args(c)
    c.add_argument("--out", type=Path, default=None, help="Copy the finished clip here")
    c.add_argument("--no-lookup", action="store_true", help="Skip the source metadata lookup")
    c.set_defaults(func=cmd_clip)

    st = sub.add_parser("status", help="Show on-disk and resume status of a clip.")
    _add_clip_args(st)
    st.set_defaults(func=cmd_status)

    d = sub.add_parser("doctor", help="Check local system dependencies (yt-dlp, ffmpeg).")
    d.set_defaults(func=cmd_doctor)

    args = parser.parse_args(argv)
    setup_logging_from_env()
    try:
        args.func(args)
    except StreamClipError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
