"""Tests for the worker output classifier and per-phase tracking."""

from __future__ import annotations

import pytest

from streamclip.progress import (
    PHASE_FETCH,
    PHASE_TRANSCODE,
    FetchProgress,
    PhaseTracker,
    TranscodeProgress,
    classify_line,
    describe,
    transcode_percent,
)


class TestClassifyLine:
    def test_download_line(self):
        result = classify_line("[download]  42.1% of 10.00MiB at 1.23MiB/s ETA 00:05")
        assert result == FetchProgress(percent=42.1, speed="1.23MiB/s")

    def test_template_line(self):
        assert classify_line(" 42.1% 512.00KiB/s") == FetchProgress(percent=42.1, speed="512.00KiB/s")

    def test_download_without_speed(self):
        assert classify_line("[download] 100%") == FetchProgress(percent=100.0)

    def test_transcode_line(self):
        result = classify_line("frame=  120 fps=30 time=00:01:05.32 bitrate=1200kbits/s")
        assert result == TranscodeProgress(elapsed_seconds=65.0)

    @pytest.mark.parametrize(
        "line",
        [
            "",
            "[youtube] abc123: Downloading webpage",
            "[download] Destination: clip.mp4",
            "time=garbage",
            "[download] 250.0%",
            "\x00\xff�",
        ],
    )
    def test_other_lines_are_ignored(self, line):
        assert classify_line(line) is None

    def test_phase_attribute(self):
        assert FetchProgress(1.0).phase == PHASE_FETCH
        assert TranscodeProgress(1.0).phase == PHASE_TRANSCODE


def test_transcode_percent_clamps():
    assert transcode_percent(5, 10) == 50.0
    assert transcode_percent(30, 10) == 100.0
    assert transcode_percent(-3, 10) == 0.0
    assert transcode_percent(5, 0) == 0.0


def test_describe():
    assert describe(FetchProgress(1.0, "2MiB/s")) == "Downloading (2MiB/s)"
    assert describe(FetchProgress(1.0)) == "Downloading"
    assert describe(TranscodeProgress(1.0)) == "Processing"


class TestPhaseTracker:
    def test_fetch_never_decreases(self):
        tracker = PhaseTracker(duration_seconds=10)
        seen = [tracker.update(FetchProgress(p))[1] for p in (10.0, 40.0, 35.0, 60.0)]
        assert seen == [10.0, 40.0, 40.0, 60.0]

    def test_advanced_flag(self):
        tracker = PhaseTracker(duration_seconds=10)
        assert tracker.update(FetchProgress(10.0))[2] is True
        assert tracker.update(FetchProgress(5.0))[2] is False
        assert tracker.update(FetchProgress(10.0))[2] is False
        assert tracker.update(FetchProgress(11.0))[2] is True

    def test_transcode_phase_starts_fresh(self):
        """Entering the transcode phase may report a lower percent, tagged with its phase."""
        tracker = PhaseTracker(duration_seconds=10)
        tracker.update(FetchProgress(100.0))
        phase, pct, advanced = tracker.update(TranscodeProgress(2.0))
        assert phase == PHASE_TRANSCODE
        assert pct == 20.0
        assert advanced
        assert tracker.high_water(PHASE_FETCH) == 100.0
        assert tracker.phase == PHASE_TRANSCODE
