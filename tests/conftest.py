import sys
import textwrap
import time
from pathlib import Path

import pytest

from streamclip.config import Settings

# Stand-in for yt-dlp. argv: <output path> <mode> [gate file]
FAKE_WORKER = textwrap.dedent(
    """
    import sys
    import time
    from pathlib import Path

    out = Path(sys.argv[1])
    mode = sys.argv[2] if len(sys.argv) > 2 else "ok"
    gate = Path(sys.argv[3]) if len(sys.argv) > 3 else None
    part = out.with_name(out.name + ".part")

    with open(out.parent / "spawns.log", "a") as fh:
        fh.write(mode + "\\n")

    def emit(line, stream=sys.stdout):
        stream.write(line + "\\n")
        stream.flush()

    if mode == "ok":
        with open(part, "ab") as fh:
            fh.write(b"x" * 2048)
        for pct in ("10.0", "55.5", "100.0"):
            emit("[download]  %s%%" % pct)
        emit("time=00:00:05.00 bitrate=1k", sys.stderr)
        part.rename(out)
        sys.exit(0)

    if mode == "fail":
        with open(part, "ab") as fh:
            fh.write(b"x" * 4096)
        emit("[download]  12.0%")
        emit("ERROR: unable to download fragment", sys.stderr)
        sys.exit(3)

    if mode == "gate":
        emit("[download]   5.0%")
        while not gate.exists():
            time.sleep(0.02)
        with open(part, "ab") as fh:
            fh.write(b"x" * 2048)
        part.rename(out)
        emit("[download] 100.0%")
        sys.exit(0)

    if mode == "hang":
        emit("[download]   1.0%")
        while True:
            time.sleep(0.05)

    if mode == "record":
        while True:
            with open(out, "ab") as fh:
                fh.write(b"r" * 512)
            time.sleep(0.02)

    if mode == "stubborn":
        import signal
        signal.signal(signal.SIGINT, signal.SIG_IGN)
        while True:
            with open(out, "ab") as fh:
                fh.write(b"s" * 512)
            time.sleep(0.02)

    if mode == "record-exit":
        with open(out, "ab") as fh:
            fh.write(b"r" * 1024)
        sys.exit(0)

    if mode == "record-crash":
        with open(out, "ab") as fh:
            fh.write(b"r" * 1024)
        emit("ERROR: stream ended unexpectedly", sys.stderr)
        sys.exit(2)

    sys.exit(64)
    """
)


@pytest.fixture
def fake_worker(tmp_path) -> Path:
    script = tmp_path / "fake_worker.py"
    script.write_text(FAKE_WORKER, encoding="utf-8")
    return script


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        temp_dir=tmp_path / "temp",
        worker_binary=sys.executable,
        stall_poll_seconds=60.0,
        sample_interval_seconds=0.05,
        broadcast_interval_seconds=0.05,
        stop_poll_seconds=0.05,
        stop_timeout_seconds=3.0,
        file_wait_seconds=1.0,
    )


def clip_argv(script: Path, mode: str = "ok", gate: Path = None):
    def build(fp, settings):
        argv = [sys.executable, str(script), str(fp.output_path), mode]
        if gate is not None:
            argv.append(str(gate))
        return argv

    return build


def recording_argv(script: Path, mode: str = "record"):
    def build(source, output_path, settings, quality):
        return [sys.executable, str(script), str(output_path), mode]

    return build


def fake_remux(source_path, output_path=None, *, ffmpeg="ffmpeg", timeout=3600):
    out = Path(source_path).with_suffix(".mp4")
    out.write_bytes(Path(source_path).read_bytes())
    return out


def fake_cut(source_path, output_path, start_seconds, duration_seconds, *, ffmpeg="ffmpeg", timeout=3600):
    Path(output_path).write_bytes(b"cut:%g:%g" % (start_seconds, duration_seconds))
    return Path(output_path)


def spawn_count(directory: Path) -> int:
    log = directory / "spawns.log"
    if not log.exists():
        return 0
    return len(log.read_text().splitlines())


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
