"""The state object that owns every registry, timer and channel.

There is no module-level state: callers build one ``Orchestrator`` and pass
it where it is needed (the FastAPI app, the CLI, tests).
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .broadcast import Broadcaster
from .cleanup import CleanupScheduler, PeriodicTask
from .config import Settings, load_settings
from .errors import ValidationError
from .jobs import ClipRegistry
from .metadata import SourceResolver
from .recording import RecordingManager

logger = logging.getLogger(__name__)


class Orchestrator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        resolver: Optional[SourceResolver] = None,
        clip_options: Optional[dict[str, Any]] = None,
        recording_options: Optional[dict[str, Any]] = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.resolver = resolver
        self.broadcaster = Broadcaster()
        self.cleanup = CleanupScheduler(self.settings.cleanup_delay_seconds)
        self.clips = ClipRegistry(self.settings, self.broadcaster, resolver=resolver, **(clip_options or {}))
        self.recordings = RecordingManager(
            self.settings,
            self.broadcaster,
            self.cleanup,
            resolver=resolver,
            **(recording_options or {}),
        )
        self._sweeper: Optional[PeriodicTask] = None

    def start(self) -> "Orchestrator":
        """Sweep stale partials now and every `sweep_interval_seconds` after."""
        self.settings.temp_dir.mkdir(parents=True, exist_ok=True)
        removed = self.clips.sweep_stale_partials()
        if removed:
            logger.info("Startup sweep removed %d stale partial file(s)", removed)
        if self._sweeper is None:
            self._sweeper = PeriodicTask(
                self.settings.sweep_interval_seconds,
                self.clips.sweep_stale_partials,
                name="stale-partial-sweep",
            ).start()
        return self

    def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.stop()
            self._sweeper = None
        self.clips.shutdown()
        self.recordings.shutdown()
        self.cleanup.shutdown()

    @property
    def cleanup_timeout_minutes(self) -> float:
        return self.cleanup.delay_seconds / 60

    def set_cleanup_timeout(self, minutes: Any) -> float:
        try:
            value = float(minutes)
        except (TypeError, ValueError) as exc:
            raise ValidationError("minutes must be a number") from exc
        if value < 1:
            raise ValidationError("minutes must be at least 1")
        self.cleanup.delay_seconds = value * 60
        self.settings.cleanup_delay_seconds = value * 60
        return value

    def __enter__(self) -> "Orchestrator":
        return self.start()

    def __exit__(self, *args: Any) -> None:
        self.shutdown()

