"""Background trigger adapter — re-evaluate when the health platform has new data."""

from __future__ import annotations

import inspect
from typing import TYPE_CHECKING, Any, Callable

import structlog

from sleep_sentinel.models import AlertSource, SignalKind, SleepAlert

if TYPE_CHECKING:
    from sleep_sentinel.collectors.base import HealthDataSource
    from sleep_sentinel.monitors.detection import SleepDetectionEngine

logger = structlog.get_logger(__name__)

AlertCallback = Callable[[SleepAlert], Any]  # sync or async


class BackgroundTriggerAdapter:
    """Subscribe to data-change notifications and run the engine off-cycle.

    Every notification triggers one evaluation on the shared engine; a
    confirmed result invokes the alert callback once for that notification.
    Deduplication beyond the engine's debounce is left to the caller.
    """

    def __init__(self, engine: SleepDetectionEngine, source: HealthDataSource) -> None:
        self._engine = engine
        self._source = source
        self._alert_callback: AlertCallback | None = None
        self._registered: list[SignalKind] = []

    @property
    def registered_kinds(self) -> list[SignalKind]:
        return list(self._registered)

    def register(self, alert_callback: AlertCallback) -> list[SignalKind]:
        """Subscribe for every signal kind not yet registered.

        Safe to call repeatedly; a subscription that fails is logged and
        retried on the next call.
        """
        self._alert_callback = alert_callback
        for kind in SignalKind:
            if kind in self._registered:
                continue
            try:
                self._source.subscribe(kind, self.handle_data_change)
            except Exception as exc:
                logger.warning(
                    "background.register_failed",
                    kind=kind.value,
                    source=self._source.name,
                    error=str(exc),
                )
                continue
            self._registered.append(kind)
            logger.info("background.registered", kind=kind.value, source=self._source.name)
        return list(self._registered)

    async def handle_data_change(self, kind: SignalKind) -> bool:
        """Evaluate after a data-change notification.  Returns the decision."""
        logger.debug("background.triggered", kind=kind.value)
        try:
            confirmed, snapshot = await self._engine.evaluate_with_snapshot()
        except Exception:
            logger.exception("background.evaluate_error", kind=kind.value)
            return False

        if not confirmed or self._alert_callback is None:
            return confirmed

        alert = SleepAlert(
            source=AlertSource.BACKGROUND,
            probability=snapshot.probability,
            state=snapshot.state,
        )
        if await deliver_alert(self._alert_callback, alert):
            logger.info("background.alert_dispatched", alert_id=alert.id, kind=kind.value)
        return confirmed


async def deliver_alert(callback: AlertCallback, alert: SleepAlert) -> bool:
    """Invoke a sync or async alert callback, logging instead of raising."""
    try:
        result = callback(alert)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("alert.callback_error", alert_id=alert.id, source=alert.source.value)
        return False
    return True
