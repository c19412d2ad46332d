"""Process-group ownership for external workers.

yt-dlp forks ffmpeg (and more yt-dlp children for parallel fragment
fetches), so cancelling the direct child is not enough: the whole group
has to be signalled.

POSIX: the worker starts in a new session, and the group is signalled
with ``os.killpg``.
Windows: the worker starts with CREATE_NEW_PROCESS_GROUP, is interrupted with
CTRL_BREAK_EVENT, and the tree is killed with ``taskkill /T /F``.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from typing import Any, Dict, Optional

from .utils import subprocess_flags

logger = logging.getLogger(__name__)


class ProcessGroup:
    """Signals for a process and everything it spawned."""

    def __init__(self, proc: subprocess.Popen) -> None:
        self.proc = proc

    @property
    def pid(self) -> int:
        return self.proc.pid

    def alive(self) -> bool:
        return self.proc.poll() is None

    @staticmethod
    def popen_kwargs() -> Dict[str, Any]:
        raise NotImplementedError

    def interrupt(self) -> None:
        """Ask the group to stop (lets ffmpeg finalize its output)."""
        raise NotImplementedError

    def kill(self) -> None:
        """Forcefully terminate the group."""
        raise NotImplementedError


class PosixProcessGroup(ProcessGroup):
    @staticmethod
    def popen_kwargs() -> Dict[str, Any]:
        return {"start_new_session": True}

    def _signal_group(self, sig: int) -> None:
        if not self.alive():
            return
        try:
            os.killpg(self.proc.pid, sig)
        except ProcessLookupError:
            return
        except OSError as exc:
            logger.debug("killpg(%s, %s) failed (%s); signalling child only", self.proc.pid, sig, exc)
            try:
                self.proc.send_signal(sig)
            except ProcessLookupError:
                pass

    def interrupt(self) -> None:
        self._signal_group(signal.SIGINT)

    def kill(self) -> None:
        self._signal_group(signal.SIGKILL)


class WindowsProcessGroup(ProcessGroup):
    @staticmethod
    def popen_kwargs() -> Dict[str, Any]:
        flags = subprocess_flags().get("creationflags", 0)
        flags |= getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0x00000200)
        return {"creationflags": flags}

    def interrupt(self) -> None:
        if not self.alive():
            return
        try:
            self.proc.send_signal(getattr(signal, "CTRL_BREAK_EVENT"))
        except (OSError, ValueError, AttributeError) as exc:
            logger.debug("CTRL_BREAK_EVENT to %s failed (%s); killing tree", self.proc.pid, exc)
            self.kill()

    def kill(self) -> None:
        if not self.alive():
            return
        result = subprocess.run(
            ["taskkill", "/PID", str(self.proc.pid), "/T", "/F"],
            capture_output=True,
            text=True,
            **subprocess_flags(),
        )
        if result.returncode != 0 and self.alive():
            logger.debug("taskkill failed for %s: %s", self.proc.pid, result.stderr.strip())
            self.proc.kill()


def process_group_class(platform: Optional[str] = None) -> type[ProcessGroup]:
    platform = platform or sys.platform
    return WindowsProcessGroup if platform == "win32" else PosixProcessGroup


def spawn_group(argv: list[str], **popen_kwargs: Any) -> ProcessGroup:
    """Popen `argv` detached in its own group. OSError propagates to the caller."""
    group_cls = process_group_class()
    kwargs = dict(group_cls.popen_kwargs())
    kwargs.update(popen_kwargs)
    proc = subprocess.Popen(argv, **kwargs)
    return group_cls(proc)
