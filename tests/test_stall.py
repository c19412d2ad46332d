import logging

from streamclip.errors import StallWarning
from streamclip.stall import StallDetector


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_no_warning_before_timeout():
    clock = FakeClock()
    det = StallDetector("abc", stall_timeout=120, clock=clock)
    clock.now += 119
    assert det.check() is None
    assert det.warnings == 0


def test_warns_once_per_episode(caplog):
    clock = FakeClock()
    det = StallDetector("abc", stall_timeout=120, clock=clock)
    det.mark_progress(42.0)
    clock.now += 121

    with caplog.at_level(logging.WARNING, logger="streamclip.stall"):
        warning = det.check()
        assert det.check() is None

    assert isinstance(warning, StallWarning)
    assert warning.percent == 42.0
    assert det.warnings == 1
    assert "stalled" in caplog.text


def test_progress_rearms_warning():
    clock = FakeClock()
    det = StallDetector("abc", stall_timeout=120, clock=clock)
    clock.now += 121
    assert det.check() is not None

    det.mark_progress(50.0)
    assert det.idle_seconds() == 0
    clock.now += 121
    assert det.check() is not None
    assert det.warnings == 2


def test_finished_job_never_warns():
    clock = FakeClock()
    det = StallDetector("abc", stall_timeout=120, clock=clock)
    det.mark_progress(100.0)
    clock.now += 1000
    assert det.check() is None


def test_thread_start_and_stop():
    det = StallDetector("abc", poll_interval=0.01, stall_timeout=0.0).start()
    det.stop()
    assert det.stopped
