"""Interaction recency tracking for the inactivity signal."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable

import structlog

from sleep_sentinel.models import utcnow

logger = structlog.get_logger(__name__)


class InactivityTracker:
    """Remember when the user last interacted with the device.

    Interaction handlers call :meth:`note_interaction` from any thread while
    the evaluation path reads :meth:`current_inactivity_duration`; both go
    through one lock so a read never sees a half-written timestamp.

    The tracker starts "now" so a freshly started system is never classified
    as long inactive.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._last_interaction = clock()

    def note_interaction(self) -> None:
        with self._lock:
            now = self._last_interaction = self._clock()
        logger.debug("inactivity.interaction_noted", at=now.isoformat())

    def current_inactivity_duration(self) -> timedelta:
        with self._lock:
            last = self._last_interaction
        # Clock reads race with interaction writes; never report negative idle time.
        return max(timedelta(0), self._clock() - last)

    @property
    def last_interaction(self) -> datetime:
        with self._lock:
            return self._last_interaction
