import os
import time

import pytest

from streamclip.errors import ValidationError
from streamclip.orchestrator import Orchestrator


def test_start_sweeps_stale_partials(settings):
    settings.temp_dir.mkdir(parents=True)
    stale = settings.temp_dir / "talk_clip_0123456789ab.mp4.part"
    stale.write_bytes(b"x" * 4096)
    old = time.time() - 3 * 86400
    os.utime(stale, (old, old))
    fresh = settings.temp_dir / "talk_clip_ba9876543210.mp4.part"
    fresh.write_bytes(b"x" * 4096)

    with Orchestrator(settings) as orch:
        assert orch._sweeper is not None
        assert not stale.exists()
        assert fresh.exists()
    assert orch._sweeper is None


def test_cleanup_timeout(settings):
    orch = Orchestrator(settings)
    assert orch.cleanup_timeout_minutes == 30
    assert orch.set_cleanup_timeout("2") == 2
    assert orch.cleanup.delay_seconds == 120
    assert settings.cleanup_delay_seconds == 120

    for bad in (0, 0.5, -3, None, "soon"):
        with pytest.raises(ValidationError):
            orch.set_cleanup_timeout(bad)
    assert orch.cleanup_timeout_minutes == 2


def test_components_share_state(settings):
    orch = Orchestrator(settings)
    assert orch.clips.broadcaster is orch.broadcaster
    assert orch.recordings.broadcaster is orch.broadcaster
    assert orch.recordings.cleanup is orch.cleanup
    orch.shutdown()
