"""Delayed cleanup timers and the periodic stale-partial sweep."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Action = Callable[[], None]


class CleanupScheduler:
    """One-shot timers keyed by id. Re-scheduling an id replaces its timer."""

    def __init__(self, delay_seconds: float = 30 * 60) -> None:
        self._delay = float(delay_seconds)
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    @property
    def delay_seconds(self) -> float:
        return self._delay

    @delay_seconds.setter
    def delay_seconds(self, value: float) -> None:
        value = float(value)
        if value <= 0:
            raise ValueError("cleanup delay must be positive")
        self._delay = value
        logger.info("Cleanup timeout set to %.0f minutes", value / 60)

    def schedule(self, key: str, action: Action, delay: Optional[float] = None) -> threading.Timer:
        delay = self._delay if delay is None else float(delay)
        timer = threading.Timer(delay, self._fire, args=(key, action))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(key, None)
            self._timers[key] = timer
            # Started under the lock so _fire always finds it registered.
            timer.start()
        if previous is not None:
            previous.cancel()
        logger.debug("Scheduled cleanup for %s in %.0fs", key, delay)
        return timer

    def cancel(self, key: str) -> bool:
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def pending(self) -> List[str]:
        with self._lock:
            return list(self._timers)

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def _fire(self, key: str, action: Action) -> None:
        current = threading.current_thread()
        with self._lock:
            if self._timers.get(key) is not current:
                return
            del self._timers[key]
        logger.info("Running scheduled cleanup for %s", key)
        try:
            action()
        except Exception:
            logger.exception("Cleanup for %s failed", key)


class PeriodicTask:
    """Run `fn` every `interval` seconds on a daemon thread until stopped."""

    def __init__(self, interval: float, fn: Callable[[], object], name: str = "periodic") -> None:
        self.interval = interval
        self.fn = fn
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "PeriodicTask":
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.fn()
            except Exception:
                logger.exception("%s failed", self.name)
