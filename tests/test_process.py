import signal
import sys

import pytest

from streamclip.process import PosixProcessGroup, WindowsProcessGroup, process_group_class, spawn_group

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]


def test_group_class_per_platform():
    assert process_group_class("win32") is WindowsProcessGroup
    assert process_group_class("linux") is PosixProcessGroup
    assert process_group_class("darwin") is PosixProcessGroup


def test_popen_kwargs():
    assert PosixProcessGroup.popen_kwargs() == {"start_new_session": True}
    assert WindowsProcessGroup.popen_kwargs()["creationflags"] & 0x00000200


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
class TestPosixGroup:
    def test_interrupt(self):
        group = spawn_group(SLEEPER)
        try:
            group.interrupt()
            assert group.proc.wait(10) == -signal.SIGINT or group.proc.returncode == 1
            assert not group.alive()
        finally:
            group.kill()

    def test_kill(self):
        group = spawn_group(SLEEPER)
        group.kill()
        assert group.proc.wait(10) == -signal.SIGKILL

    def test_signals_after_exit_are_ignored(self):
        group = spawn_group([sys.executable, "-c", "pass"])
        group.proc.wait(10)
        group.interrupt()
        group.kill()
