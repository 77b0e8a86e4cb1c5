"""Monitoring session — periodic sleep checks on a background asyncio task.

Architecture
~~~~~~~~~~~~
The ``MonitoringService`` owns the poll loop the detection engine itself
does not have.  While active, every ``check_interval_minutes`` (clamped to
1–10) it:

1. Runs one :meth:`SleepDetectionEngine.evaluate`.
2. Advances the session phase (``WATCHING`` ⇄ ``SLEEP_DETECTED``).
3. Dispatches an alert on the ``WATCHING → SLEEP_DETECTED`` transition.
4. Appends a :class:`CheckLogEntry` built from the engine snapshot.

Stopping the session cancels the loop task, including an evaluation that
is still waiting on the health platform.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

import structlog
from pydantic import BaseModel

from sleep_sentinel.config import get_settings
from sleep_sentinel.models import AlertSource, EvaluationSnapshot, SleepAlert, clamp_min_probability, utcnow
from sleep_sentinel.monitors.background import AlertCallback, deliver_alert
from sleep_sentinel.monitors.detection import SleepDetectionEngine

logger = structlog.get_logger(__name__)

MIN_CHECK_INTERVAL_MINUTES = 1.0
MAX_CHECK_INTERVAL_MINUTES = 10.0


def clamp_check_interval(minutes: float) -> float:
    return max(MIN_CHECK_INTERVAL_MINUTES, min(MAX_CHECK_INTERVAL_MINUTES, minutes))


class MonitoringPhaseKind(str, Enum):
    IDLE = "idle"
    WATCHING = "watching"
    SLEEP_DETECTED = "sleep_detected"


class MonitoringPhase(BaseModel):
    kind: MonitoringPhaseKind = MonitoringPhaseKind.IDLE
    started_at: datetime | None = None
    detected_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.kind is not MonitoringPhaseKind.IDLE


class CheckLogEntry(BaseModel):
    """One poll-loop evaluation as shown in the recent-checks log."""
    timestamp: datetime
    probability: float | None
    is_sleeping: bool
    is_error: bool


class MonitoringService:
    """Background service driving the detection engine at a fixed interval.

    Integration::

        service = MonitoringService(engine, alert_callback=dispatcher.dispatch)
        await service.start()
        ...
        await service.stop()
    """

    def __init__(
        self,
        engine: SleepDetectionEngine,
        *,
        alert_callback: AlertCallback | None = None,
        interval_minutes: float | None = None,
        log_retention: timedelta | None = None,
        log_max_entries: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = get_settings()
        self._engine = engine
        self._alert_callback = alert_callback
        self._interval = clamp_check_interval(
            interval_minutes if interval_minutes is not None else settings.check_interval_minutes
        )
        self._log_retention = log_retention or timedelta(minutes=settings.log_retention_minutes)
        self._log_max_entries = log_max_entries or settings.log_max_entries
        self._clock = clock

        self._phase = MonitoringPhase()
        self._message = "Monitoring is currently paused."
        self._logs: list[CheckLogEntry] = []
        self._task: asyncio.Task | None = None

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Start watching; the first check runs immediately."""
        if self._phase.is_active:
            return
        self._set_phase(
            MonitoringPhase(kind=MonitoringPhaseKind.WATCHING, started_at=self._clock()),
            "Watching for drowsiness patterns...",
        )
        self._start_loop()
        logger.info(
            "monitoring.started",
            interval_minutes=self._interval,
            min_probability=self._engine.min_candidate_probability,
        )

    async def stop(self) -> None:
        """Stop watching and cancel any in-flight evaluation."""
        await self._cancel_loop()
        self._set_phase(MonitoringPhase(), "Monitoring is currently paused.")
        logger.info("monitoring.stopped")

    def _start_loop(self) -> None:
        self._task = asyncio.create_task(self._run_loop())

    async def _cancel_loop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ── Main loop ─────────────────────────────────────────────

    async def _run_loop(self) -> None:
        logger.debug("monitoring.loop_started", interval_minutes=self._interval)
        while True:
            try:
                await self.run_check()
            except Exception:
                logger.exception("monitoring.check_error")
            await asyncio.sleep(self.interval_seconds)

    async def run_check(self) -> bool:
        """Run one evaluation and fold the result into the session."""
        is_sleeping, _ = await self.run_check_with_snapshot()
        return is_sleeping

    async def run_check_with_snapshot(self) -> tuple[bool, EvaluationSnapshot]:
        """Like :meth:`run_check`, also returning the snapshot behind the decision.

        The alert and the log entry use this snapshot, not
        ``engine.last_snapshot()``, which a background evaluation may replace
        while the alert is being delivered.
        """
        is_sleeping, snapshot = await self._engine.evaluate_with_snapshot()
        await self._process_result(is_sleeping, snapshot)
        self._append_log(is_sleeping, snapshot)
        return is_sleeping, snapshot

    async def _process_result(self, is_sleeping: bool, snapshot: EvaluationSnapshot) -> None:
        phase = self._phase
        if phase.kind is MonitoringPhaseKind.IDLE:
            return

        if phase.kind is MonitoringPhaseKind.WATCHING and is_sleeping:
            self._set_phase(
                MonitoringPhase(
                    kind=MonitoringPhaseKind.SLEEP_DETECTED,
                    started_at=phase.started_at,
                    detected_at=self._clock(),
                ),
                "Wake up! Sleep signature detected.",
            )
            await self._alert(
                SleepAlert(
                    source=AlertSource.POLL,
                    probability=snapshot.probability,
                    state=snapshot.state,
                )
            )
        elif phase.kind is MonitoringPhaseKind.SLEEP_DETECTED and not is_sleeping:
            self._set_phase(
                MonitoringPhase(kind=MonitoringPhaseKind.WATCHING, started_at=phase.started_at),
                "Back on watch. Stay focused!",
            )
        elif phase.kind is MonitoringPhaseKind.WATCHING:
            self._message = "Watching for drowsiness patterns..."

    async def _alert(self, alert: SleepAlert) -> bool:
        if self._alert_callback is None:
            logger.warning("monitoring.no_alert_callback", alert_id=alert.id)
            return False
        return await deliver_alert(self._alert_callback, alert)

    def _set_phase(self, phase: MonitoringPhase, message: str) -> None:
        if phase.kind is not self._phase.kind:
            logger.info("monitoring.phase_changed", previous=self._phase.kind.value, phase=phase.kind.value)
        self._phase = phase
        self._message = message

    # ── Check log ─────────────────────────────────────────────

    def _append_log(self, is_sleeping: bool, snapshot: EvaluationSnapshot) -> None:
        entry = CheckLogEntry(
            timestamp=snapshot.timestamp,
            probability=snapshot.probability,
            is_sleeping=is_sleeping,
            is_error=snapshot.had_missing_data,
        )
        self._logs.append(entry)
        self._prune_logs()
        if entry.is_error:
            logger.debug("monitoring.check_logged", partial_data=True)
        else:
            logger.debug(
                "monitoring.check_logged",
                probability=entry.probability,
                sleeping=entry.is_sleeping,
            )

    def _prune_logs(self) -> None:
        cutoff = self._clock() - self._log_retention
        self._logs = [e for e in self._logs if e.timestamp >= cutoff]
        if len(self._logs) > self._log_max_entries:
            self._logs = self._logs[-self._log_max_entries:]

    @property
    def logs(self) -> list[CheckLogEntry]:
        return list(self._logs)

    # ── Settings ──────────────────────────────────────────────

    async def update_check_interval(self, minutes: float) -> float:
        """Change the poll interval; restarts the loop when monitoring is active."""
        clamped = clamp_check_interval(minutes)
        if abs(clamped - self._interval) > 1e-9:
            self._interval = clamped
            logger.info("monitoring.interval_updated", interval_minutes=clamped)
            if self._phase.is_active:
                await self._cancel_loop()
                self._start_loop()
        return self._interval

    def update_min_probability(self, value: float) -> float:
        """Change the engine's acceptance threshold when it actually differs."""
        clamped = clamp_min_probability(value)
        if abs(clamped - self._engine.min_candidate_probability) > 1e-9:
            self._engine.set_min_candidate_probability(clamped)
        return self._engine.min_candidate_probability

    # ── Manual triggers ───────────────────────────────────────

    async def run_test_alert(self) -> SleepAlert:
        """Dispatch a synthetic alert without touching the engine's debounce state."""
        alert = SleepAlert(
            source=AlertSource.TEST,
            message="Test alert. Sleep detection is working.",
        )
        await self._alert(alert)
        logger.info("monitoring.test_alert", alert_id=alert.id)
        return alert

    # ── Status ────────────────────────────────────────────────

    @property
    def phase(self) -> MonitoringPhase:
        return self._phase

    @property
    def message(self) -> str:
        return self._message

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval_minutes(self) -> float:
        return self._interval

    @property
    def interval_seconds(self) -> float:
        return self._interval * 60

    @property
    def status(self) -> dict[str, Any]:
        snapshot = self._engine.last_snapshot()
        return {
            "phase": self._phase.model_dump(mode="json"),
            "message": self._message,
            "running": self.is_running,
            "interval_minutes": self._interval,
            "min_probability": self._engine.min_candidate_probability,
            "last_snapshot": snapshot.model_dump(mode="json") if snapshot else None,
        }
