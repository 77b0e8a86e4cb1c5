"""In-process health data source fed by pushes (API ingest, tests, demos)."""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable

import structlog

from sleep_sentinel.collectors.base import DataChangeCallback, HealthDataSource
from sleep_sentinel.config import get_settings
from sleep_sentinel.models import SignalKind, utcnow

logger = structlog.get_logger(__name__)


class InMemoryHealthSource(HealthDataSource):
    """Keep timestamped samples per signal kind and notify subscribers on push.

    Subscribers are awaited sequentially after each :meth:`add_samples`; a
    failing subscriber is logged and does not stop the others.

    Every :meth:`record` drops samples older than ``retention`` before the
    newest timestamp stored so far, so a long-running ingest stays bounded.
    Retention defaults to ``memory_retention_minutes`` and is never shorter
    than the detection lookback window.
    """

    name = "memory"

    def __init__(self, *, retention: timedelta | None = None) -> None:
        settings = get_settings()
        if retention is None:
            retention = timedelta(minutes=settings.memory_retention_minutes)
        self.retention = max(retention, timedelta(minutes=settings.lookback_window_minutes))
        self._samples: dict[SignalKind, list[tuple[datetime, float]]] = defaultdict(list)
        self._subscribers: dict[SignalKind, list[DataChangeCallback]] = defaultdict(list)
        self._newest: datetime | None = None
        self._lock = threading.Lock()

    # ── Query ─────────────────────────────────────────────────

    async def fetch_samples(
        self,
        kind: SignalKind,
        window_start: datetime,
        window_end: datetime,
    ) -> list[float]:
        with self._lock:
            return [
                value
                for ts, value in self._samples[kind]
                if window_start <= ts <= window_end
            ]

    # ── Producer side ─────────────────────────────────────────

    def record(self, kind: SignalKind, values: Iterable[float], *, timestamp: datetime | None = None) -> int:
        """Store *values* without notifying subscribers.  Returns the count stored."""
        ts = timestamp or utcnow()
        entries = [(ts, float(v)) for v in values]
        removed = 0
        with self._lock:
            self._samples[kind].extend(entries)
            if entries and (self._newest is None or ts > self._newest):
                self._newest = ts
            if self._newest is not None:
                removed = self._drop_before(self._newest - self.retention)
        if removed:
            logger.debug("memory_source.pruned", kind=kind.value, removed=removed)
        return len(entries)

    async def add_samples(
        self,
        kind: SignalKind,
        values: Iterable[float],
        *,
        timestamp: datetime | None = None,
    ) -> int:
        """Store *values* and notify subscribers of *kind*."""
        count = self.record(kind, values, timestamp=timestamp)
        if count:
            await self.notify_changed(kind)
        return count

    def prune(self, before: datetime) -> int:
        """Drop samples older than *before*.  Returns how many were removed."""
        with self._lock:
            return self._drop_before(before)

    def _drop_before(self, before: datetime) -> int:
        # Caller holds self._lock.
        removed = 0
        for kind, entries in self._samples.items():
            kept = [(ts, v) for ts, v in entries if ts >= before]
            removed += len(entries) - len(kept)
            self._samples[kind] = kept
        return removed

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()
            self._newest = None

    @property
    def sample_count(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._samples.values())

    # ── Subscriptions ─────────────────────────────────────────

    def subscribe(self, kind: SignalKind, callback: DataChangeCallback) -> None:
        self._subscribers[kind].append(callback)
        logger.debug("memory_source.subscribed", kind=kind.value)

    async def notify_changed(self, kind: SignalKind) -> None:
        for callback in list(self._subscribers[kind]):
            try:
                await callback(kind)
            except Exception as exc:
                logger.error("memory_source.subscriber_error", kind=kind.value, error=str(exc))

    @property
    def subscriber_count(self) -> int:
        return sum(len(cbs) for cbs in self._subscribers.values())
