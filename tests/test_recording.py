"""Tests for live recording lifecycle, terminal transitions and cleanup."""

from __future__ import annotations

import sys
import threading
import time

import pytest

from conftest import fake_cut, fake_remux, recording_argv, wait_until
from streamclip.broadcast import Broadcaster
from streamclip.cleanup import CleanupScheduler
from streamclip.errors import RecordingNotFoundError, RecordingStateError, RemuxError, ValidationError
from streamclip.recording import RecordingManager, RecordingStatus, new_recording_id

SOURCE = "https://www.youtube.com/watch?v=live123"


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def cleanup():
    sched = CleanupScheduler(delay_seconds=600)
    yield sched
    sched.shutdown()


def _manager(settings, broadcaster, cleanup, script, mode="record", **kwargs):
    kwargs.setdefault("remux", fake_remux)
    kwargs.setdefault("cutter", fake_cut)
    return RecordingManager(
        settings,
        broadcaster,
        cleanup,
        argv_builder=recording_argv(script, mode),
        **kwargs,
    )


def _has_bytes(rec):
    return rec.output_path.exists() and rec.output_path.stat().st_size > 0


def test_recording_id_format():
    rec_id = new_recording_id()
    prefix, ms, rand = rec_id.split("_")
    assert prefix == "rec"
    assert ms.isdigit() and len(ms) >= 13
    assert 0 <= int(rand) <= 9999


class TestStop:
    def test_stop_once_then_state_error(self, settings, broadcaster, cleanup, fake_worker):
        mgr = _manager(settings, broadcaster, cleanup, fake_worker)
        rec = mgr.start(SOURCE, title="My Stream")
        assert rec.status is RecordingStatus.RECORDING
        assert rec.output_path.name.startswith("my_stream_rec_")
        assert rec.output_path.suffix == ".ts"
        assert wait_until(lambda: _has_bytes(rec), timeout=20)

        stopped = mgr.stop(rec.id)
        assert stopped.status is RecordingStatus.STOPPED
        assert stopped.error is None
        assert stopped.remuxed
        assert stopped.output_path.suffix == ".mp4"
        assert stopped.output_path.exists()
        assert not stopped.output_path.with_suffix(".ts").exists()
        assert rec.id in cleanup.pending()

        with pytest.raises(RecordingStateError):
            mgr.stop(rec.id)

    @pytest.mark.skipif(sys.platform == "win32", reason="SIGINT handling is POSIX-specific")
    def test_stop_escalates_to_kill(self, settings, broadcaster, cleanup, fake_worker):
        settings.stop_timeout_seconds = 0.5
        mgr = _manager(settings, broadcaster, cleanup, fake_worker, mode="stubborn")
        rec = mgr.start(SOURCE, title="stubborn")
        assert wait_until(lambda: _has_bytes(rec), timeout=20)

        stopped = mgr.stop(rec.id)
        assert stopped.status is RecordingStatus.STOPPED
        assert stopped.exit_signal == "SIGKILL"

    def test_remux_failure_keeps_ts(self, settings, broadcaster, cleanup, fake_worker):
        def broken_remux(path, **kwargs):
            raise RemuxError("ffmpeg exploded")

        mgr = _manager(settings, broadcaster, cleanup, fake_worker, remux=broken_remux)
        rec = mgr.start(SOURCE, title="t")
        assert wait_until(lambda: _has_bytes(rec), timeout=20)

        stopped = mgr.stop(rec.id)
        assert not stopped.remuxed
        assert stopped.output_path.suffix == ".ts"
        assert stopped.output_path.exists()
        assert mgr.download_path(rec.id) == stopped.output_path


class TestTerminalTransitions:
    def test_max_duration_finishes(self, settings, broadcaster, cleanup, fake_worker):
        mgr = _manager(settings, broadcaster, cleanup, fake_worker)
        rec = mgr.start(SOURCE, max_duration_seconds=1, title="t")
        assert rec.exited.wait(20)
        stopped_after = time.monotonic() - rec.started_monotonic
        assert 1.0 <= stopped_after < 1.0 + settings.sample_interval_seconds + 1.5
        assert rec.settled.wait(20)
        assert rec.status is RecordingStatus.FINISHED
        assert rec.error is None
        with pytest.raises(RecordingStateError):
            mgr.stop(rec.id)

    def test_clean_exit_finishes(self, settings, broadcaster, cleanup, fake_worker):
        mgr = _manager(settings, broadcaster, cleanup, fake_worker, mode="record-exit")
        rec = mgr.start(SOURCE, title="t")
        assert rec.settled.wait(20)
        assert rec.status is RecordingStatus.FINISHED
        assert rec.exit_code == 0
        assert rec.remuxed

    def test_crash_is_stopped_with_error(self, settings, broadcaster, cleanup, fake_worker):
        mgr = _manager(settings, broadcaster, cleanup, fake_worker, mode="record-crash")
        rec = mgr.start(SOURCE, title="t")
        assert rec.settled.wait(20)
        assert rec.status is RecordingStatus.STOPPED
        assert rec.exit_code == 2
        assert rec.error is not None
        assert "stream ended unexpectedly" in rec.stderr_tail
        assert len(rec.stderr_tail) <= 2000

        status = mgr.status(rec.id)
        assert status["status"] == "stopped"
        assert status["error"]["returncode"] == 2


class TestEvents:
    def test_progress_and_status_events(self, settings, broadcaster, cleanup, fake_worker):
        sub = broadcaster.subscribe(replay_progress=False)
        mgr = _manager(settings, broadcaster, cleanup, fake_worker)
        rec = mgr.start(SOURCE, title="t")
        assert wait_until(lambda: _has_bytes(rec), timeout=20)
        assert wait_until(lambda: mgr.status(rec.id)["sizeBytes"] > 0, timeout=5)
        mgr.stop(rec.id)

        events = [e for e in sub.drain() if e.get("id") == rec.id]
        types = [e["type"] for e in events]
        assert types[0] == "recording-status"
        assert "recording-progress" in types
        assert events[-1] == {
            "type": "recording-status",
            "id": rec.id,
            "status": "stopped",
            "sizeMB": events[-1]["sizeMB"],
            "remuxed": True,
        }
        progress = next(e for e in events if e["type"] == "recording-progress")
        assert isinstance(progress["sizeMB"], str)

    def test_cleanup_removes_recording(self, settings, broadcaster, fake_worker):
        sub = broadcaster.subscribe(replay_progress=False)
        sched = CleanupScheduler(delay_seconds=0.1)
        try:
            mgr = _manager(settings, broadcaster, sched, fake_worker, mode="record-exit")
            rec = mgr.start(SOURCE, title="t")
            assert rec.settled.wait(20)
            assert wait_until(lambda: mgr.list() == [], timeout=5)
            assert not rec.output_path.exists()
            with pytest.raises(RecordingNotFoundError):
                mgr.status(rec.id)
            assert {"type": "recording-removed", "id": rec.id} in sub.drain()
        finally:
            sched.shutdown()


class TestQueries:
    def test_unknown_id(self, settings, broadcaster, cleanup, fake_worker):
        mgr = _manager(settings, broadcaster, cleanup, fake_worker)
        for op in (mgr.stop, mgr.status, mgr.download_path):
            with pytest.raises(RecordingNotFoundError):
                op("rec_0_0")
        with pytest.raises(KeyError):
            mgr.get("rec_0_0")

    def test_list_and_download(self, settings, broadcaster, cleanup, fake_worker):
        mgr = _manager(settings, broadcaster, cleanup, fake_worker, mode="record-exit")
        rec = mgr.start(SOURCE, title="Show")
        assert rec.settled.wait(20)
        listed = mgr.list()
        assert [r["id"] for r in listed] == [rec.id]
        assert listed[0]["status"] == "finished"
        assert mgr.download_path(rec.id).suffix == ".mp4"
        assert rec.download_name == "Show.mp4"

    def test_clip_from_recording(self, settings, broadcaster, cleanup, fake_worker):
        mgr = _manager(settings, broadcaster, cleanup, fake_worker, mode="record-exit")
        rec = mgr.start(SOURCE, title="Show")
        assert rec.settled.wait(20)

        out = mgr.clip_from_recording(rec.id, 5, 12.5)
        assert out.name.startswith("show_clip_")
        assert out.suffix == ".mp4"
        assert out.read_bytes() == b"cut:5:7.5"

        with pytest.raises(ValidationError):
            mgr.clip_from_recording(rec.id, 12, 5)

    def test_title_from_resolver(self, settings, broadcaster, cleanup, fake_worker):
        from streamclip.metadata import SourceInfo

        mgr = _manager(
            settings,
            broadcaster,
            cleanup,
            fake_worker,
            mode="record-exit",
            resolver=lambda src: SourceInfo(title="Resolved Title", is_live=True),
        )
        rec = mgr.start(SOURCE)
        assert rec.title == "Resolved Title"
        assert rec.settled.wait(20)

    def test_rejects_bad_input(self, settings, broadcaster, cleanup, fake_worker):
        mgr = _manager(settings, broadcaster, cleanup, fake_worker)
        with pytest.raises(ValidationError):
            mgr.start("")
        with pytest.raises(ValidationError):
            mgr.start(SOURCE, max_duration_seconds=-1, title="t")

    @pytest.mark.parametrize("value", ["nan", "inf", float("inf"), "-1", "soon"])
    def test_rejects_unbounded_max_duration(self, settings, broadcaster, cleanup, fake_worker, value):
        mgr = _manager(settings, broadcaster, cleanup, fake_worker)
        with pytest.raises(ValidationError):
            mgr.start(SOURCE, max_duration_seconds=value, title="t")
        assert mgr.list() == []

    def test_numeric_title_is_coerced(self, settings, broadcaster, cleanup, fake_worker):
        mgr = _manager(settings, broadcaster, cleanup, fake_worker, mode="record-exit")
        rec = mgr.start(SOURCE, title=123)
        assert rec.title == "123"
        assert rec.output_path.name.startswith("123_rec_")
        assert rec.settled.wait(20)

        with pytest.raises(ValidationError):
            mgr.start(SOURCE, title={"name": "x"})


def test_download_path_stays_valid_through_stop(settings, fake_worker):
    cleanup = CleanupScheduler(delay_seconds=600)
    mgr = _manager(settings, Broadcaster(), cleanup, fake_worker)
    missing = []
    try:
        for _ in range(5):
            rec = mgr.start(SOURCE, title="t")
            assert wait_until(lambda: _has_bytes(rec), timeout=20)

            done = threading.Event()

            def poll(rec_id=rec.id):
                while not done.is_set():
                    try:
                        mgr.download_path(rec_id)
                    except RecordingNotFoundError:
                        missing.append(rec_id)

            poller = threading.Thread(target=poll)
            poller.start()
            try:
                stopped = mgr.stop(rec.id)
            finally:
                done.set()
                poller.join(5)
            assert stopped.remuxed
            assert mgr.download_path(rec.id).suffix == ".mp4"
    finally:
        cleanup.shutdown()
    assert missing == []


class TestStopNeverHangs:
    def test_finalize_failure_still_settles(self, settings, broadcaster, fake_worker):
        class BrokenCleanup(CleanupScheduler):
            def schedule(self, key, action, delay=None):
                raise RuntimeError("timer exploded")

        mgr = _manager(settings, broadcaster, BrokenCleanup(), fake_worker)
        rec = mgr.start(SOURCE, title="t")
        assert wait_until(lambda: _has_bytes(rec), timeout=20)

        stopped = mgr.stop(rec.id)
        assert stopped.status is RecordingStatus.STOPPED
        assert stopped.settled.is_set()

    def test_stop_bounded_by_slow_remux(self, settings, broadcaster, cleanup, fake_worker):
        release = threading.Event()

        def slow_remux(path, **kwargs):
            release.wait(20)
            return fake_remux(path, **kwargs)

        settings.default_timeout_seconds = 0.5
        mgr = _manager(settings, broadcaster, cleanup, fake_worker, remux=slow_remux)
        rec = mgr.start(SOURCE, title="t")
        assert wait_until(lambda: _has_bytes(rec), timeout=20)

        began = time.monotonic()
        try:
            stopped = mgr.stop(rec.id)
            assert time.monotonic() - began < 10
            assert not stopped.settled.is_set()
        finally:
            release.set()
        assert rec.settled.wait(20)
        assert rec.remuxed
