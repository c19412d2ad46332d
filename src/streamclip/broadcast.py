"""Best-effort fan-out of progress and recording events.

Each subscriber owns a bounded queue. Publishing never blocks: a subscriber
whose queue is full or that has been closed is dropped from the set.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger(__name__)

EVENT_PROGRESS = "progress"
EVENT_RECORDING_PROGRESS = "recording-progress"
EVENT_RECORDING_STATUS = "recording-status"
EVENT_RECORDING_REMOVED = "recording-removed"

Event = Dict[str, Any]


def progress_event(percent: float, message: str, *, phase: Optional[str] = None, clip_id: Optional[str] = None) -> Event:
    event: Event = {"type": EVENT_PROGRESS, "percent": round(float(percent), 2), "message": message}
    if phase is not None:
        event["phase"] = phase
    if clip_id is not None:
        event["id"] = clip_id
    return event


def recording_progress_event(rec_id: str, status: str, elapsed: int, size_mb: float) -> Event:
    return {
        "type": EVENT_RECORDING_PROGRESS,
        "id": rec_id,
        "status": status,
        "elapsed": elapsed,
        "sizeMB": f"{size_mb:.2f}",
    }


def recording_status_event(rec_id: str, status: str, **extra: Any) -> Event:
    event: Event = {"type": EVENT_RECORDING_STATUS, "id": rec_id, "status": status}
    event.update(extra)
    return event


def recording_removed_event(rec_id: str) -> Event:
    return {"type": EVENT_RECORDING_REMOVED, "id": rec_id}


class Subscription:
    def __init__(self, broadcaster: "Broadcaster", sub_id: int, maxsize: int) -> None:
        self.id = sub_id
        self._broadcaster = broadcaster
        self._queue: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, event: Event) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            return False
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None when the timeout expires."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Event]:
        out: list[Event] = []
        while True:
            try:
                out.append(self._queue.get_nowait())
            except queue.Empty:
                return out

    def close(self) -> None:
        self.closed = True
        self._broadcaster.unsubscribe(self)

    def __iter__(self) -> Iterator[Event]:
        while not self.closed:
            event = self.get(timeout=1.0)
            if event is not None:
                yield event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class Broadcaster:
    def __init__(self, default_maxsize: int = 1000) -> None:
        self.default_maxsize = default_maxsize
        self._subs: Dict[int, Subscription] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._last_progress: Event = progress_event(0, "Idle")

    @property
    def last_progress(self) -> Event:
        with self._lock:
            return dict(self._last_progress)

    def subscribe(self, maxsize: Optional[int] = None, *, replay_progress: bool = True) -> Subscription:
        sub = Subscription(self, next(self._ids), maxsize or self.default_maxsize)
        with self._lock:
            self._subs[sub.id] = sub
            if replay_progress:
                sub.offer(dict(self._last_progress))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subs.pop(sub.id, None)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def publish(self, event: Event) -> int:
        """Deliver to every live subscriber. Returns how many accepted it."""
        delivered = 0
        with self._lock:
            if event.get("type") == EVENT_PROGRESS:
                self._last_progress = dict(event)
            subs = list(self._subs.values())
        dropped: list[Subscription] = []
        for sub in subs:
            if sub.offer(event):
                delivered += 1
            else:
                dropped.append(sub)
        if dropped:
            with self._lock:
                for sub in dropped:
                    self._subs.pop(sub.id, None)
                    sub.closed = True
            logger.debug("Dropped %d slow or closed subscriber(s)", len(dropped))
        return delivered
