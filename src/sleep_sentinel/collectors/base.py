"""Abstract base class for health-platform data sources."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable

from sleep_sentinel.models import SignalKind

DataChangeCallback = Callable[[SignalKind], Awaitable[None]]


class HealthDataSource(ABC):
    """Contract every health-platform adapter must implement.

    A source answers time-window queries with plain numeric samples
    (heart rate in bpm, active energy in kcal) and optionally pushes
    "new data available" notifications to subscribers.

    Sources should return an empty list rather than raise when the platform
    is unavailable, access is denied, or the window holds no data.
    """

    name: str = "base"

    @abstractmethod
    async def fetch_samples(
        self,
        kind: SignalKind,
        window_start: datetime,
        window_end: datetime,
    ) -> list[float]:
        """Return the samples of *kind* recorded in ``[window_start, window_end]``."""

    def subscribe(self, kind: SignalKind, callback: DataChangeCallback) -> None:
        """Register *callback* for new-data notifications of *kind*.

        The default implementation does not support background delivery.
        """
        raise NotImplementedError(f"{self.name} source does not support subscriptions")

    async def close(self) -> None:
        """Release any resources held by the source."""
