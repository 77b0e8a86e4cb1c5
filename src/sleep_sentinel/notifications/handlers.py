"""Sleep-alert delivery — structured log and webhook channels.

Alerts come from three places (:class:`~sleep_sentinel.models.AlertSource`):
the poll loop, a background data-change trigger, or a manual test.  Each
channel declares which of those it wants; the dispatcher routes an alert
only to channels that accept its source and reports what happened in a
:class:`DispatchResult`.

The detection core never imports this module: ``dispatcher.dispatch`` is
handed to it as the alert callback.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

import httpx
import structlog

from sleep_sentinel.models import AlertSource

if TYPE_CHECKING:
    from sleep_sentinel.config import Settings
    from sleep_sentinel.models import SleepAlert

logger = structlog.get_logger(__name__)

ALL_SOURCES: frozenset[AlertSource] = frozenset(AlertSource)


def alert_summary(alert: SleepAlert) -> str:
    """One-line human summary, e.g. ``[poll] drowsy p=0.80: Time to move!``."""
    state = alert.state.kind.value if alert.state else "unknown"
    probability = f" p={alert.probability:.2f}" if alert.probability is not None else ""
    return f"[{alert.source.value}] {state}{probability}: {alert.message}"


def parse_sources(raw: str) -> frozenset[AlertSource]:
    """Parse a comma-separated source list (``"poll,background"``); blank means all."""
    names = [part.strip().lower() for part in raw.split(",") if part.strip()]
    return frozenset(AlertSource(name) for name in names) if names else ALL_SOURCES


# ── Dispatch result ───────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class DispatchResult:
    """What happened to one alert: which channels took it, failed or skipped it."""

    alert_id: str
    source: AlertSource
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def all_ok(self) -> bool:
        return not self.failed

    @property
    def delivered(self) -> bool:
        """At least one channel took the alert."""
        return bool(self.sent)


# ── Channels ──────────────────────────────────────────────────


class NotificationHandler(ABC):
    """A delivery channel for sleep alerts.

    ``sources`` limits the channel to alerts from those origins; by default
    it takes every alert.
    """

    name: str = "base"
    sources: frozenset[AlertSource] = ALL_SOURCES

    @abstractmethod
    async def send(self, alert: SleepAlert) -> bool:
        """Deliver an alert.  Return ``True`` on success."""

    def accepts(self, alert: SleepAlert) -> bool:
        return alert.source in self.sources


class LogHandler(NotificationHandler):
    """Write alerts to the structured log (always registered)."""

    name = "log"

    async def send(self, alert: SleepAlert) -> bool:
        logger.info(
            "notification.sleep_alert",
            alert_id=alert.id,
            source=alert.source.value,
            probability=alert.probability,
            summary=alert_summary(alert),
        )
        return True


class WebhookHandler(NotificationHandler):
    """POST the alert to a webhook (push gateway, chat bot...).

    The body is the alert's JSON plus a ``text`` field carrying
    :func:`alert_summary`, which chat webhooks display as-is.
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        sources: Iterable[AlertSource] | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport
        if sources is not None:
            self.sources = frozenset(sources)

    async def send(self, alert: SleepAlert) -> bool:
        payload = {**alert.model_dump(mode="json"), "text": alert_summary(alert)}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._url, json=payload)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "notification.webhook_failed",
                url=self._url,
                alert_id=alert.id,
                source=alert.source.value,
                error=str(exc),
            )
            return False
        logger.info("notification.webhook_sent", url=self._url, alert_id=alert.id)
        return True


# ── Dispatcher ────────────────────────────────────────────────


class NotificationDispatcher:
    """Route each alert to the channels that accept its source.

    A channel that raises or reports failure is recorded in the result and
    never stops delivery to the remaining channels.
    """

    def __init__(self, *, handlers: list[NotificationHandler] | None = None) -> None:
        self._handlers: list[NotificationHandler] = handlers or [LogHandler()]

    def add_handler(self, handler: NotificationHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, name: str) -> bool:
        """Remove the first handler matching *name*. Return ``True`` if found."""
        for i, h in enumerate(self._handlers):
            if h.name == name:
                self._handlers.pop(i)
                return True
        return False

    @property
    def handler_names(self) -> list[str]:
        return [h.name for h in self._handlers]

    def handlers_for(self, source: AlertSource) -> list[str]:
        """Names of the channels an alert from *source* would reach."""
        return [h.name for h in self._handlers if source in h.sources]

    async def dispatch(self, alert: SleepAlert) -> DispatchResult:
        result = DispatchResult(alert_id=alert.id, source=alert.source)

        for handler in self._handlers:
            if not handler.accepts(alert):
                result.skipped.append(handler.name)
                continue
            try:
                ok = await handler.send(alert)
            except Exception:
                logger.exception("notification.handler_error", handler=handler.name, alert_id=alert.id)
                ok = False
            (result.sent if ok else result.failed).append(handler.name)

        log = logger.info if result.all_ok else logger.warning
        log(
            "notification.dispatched",
            alert_id=alert.id,
            source=alert.source.value,
            sent=result.sent,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result


# ── Factory ───────────────────────────────────────────────────


def create_dispatcher(settings: Settings) -> NotificationDispatcher:
    """Build the dispatcher from settings.

    The log channel is always present.  A webhook channel is added when
    ``webhook_url`` is set, limited to ``webhook_alert_sources``.
    """
    dispatcher = NotificationDispatcher()

    if settings.webhook_url:
        dispatcher.add_handler(
            WebhookHandler(settings.webhook_url, sources=parse_sources(settings.webhook_alert_sources))
        )

    return dispatcher
