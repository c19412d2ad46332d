"""Background stall detection for one clip job.

A stall only produces a warning. yt-dlp has its own retry/backoff and
killing it would throw away fragments already in flight.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .errors import StallWarning

logger = logging.getLogger(__name__)


class StallDetector:
    def __init__(
        self,
        job_id: str,
        *,
        poll_interval: float = 30.0,
        stall_timeout: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job_id = job_id
        self.poll_interval = poll_interval
        self.stall_timeout = stall_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._last_progress = clock()
        self._percent = 0.0
        self._warned = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.warnings = 0

    def start(self) -> "StallDetector":
        self._thread = threading.Thread(target=self._run, name=f"stall-{self.job_id}", daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._thread = None

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def mark_progress(self, percent: float) -> None:
        with self._lock:
            self._last_progress = self._clock()
            self._percent = percent
            self._warned = False

    def idle_seconds(self) -> float:
        with self._lock:
            return self._clock() - self._last_progress

    def check(self) -> Optional[StallWarning]:
        """Log and return a StallWarning once per stall episode."""
        with self._lock:
            idle = self._clock() - self._last_progress
            if self._warned or idle <= self.stall_timeout or self._percent >= 100:
                return None
            self._warned = True
            self.warnings += 1
            warning = StallWarning(self.job_id, idle, self._percent)
        logger.warning("%s", warning)
        return warning

    def _run(self) -> None:
        while not self._stop.wait(self.poll_interval):
            self.check()
