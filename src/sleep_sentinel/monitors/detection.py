"""Sleep detection engine — signal acquisition, estimation and debounce.

Each :meth:`SleepDetectionEngine.evaluate` call:

1. fetches heart-rate and active-energy samples for the lookback window
   concurrently (a failed or empty fetch counts as "no samples");
2. runs the estimator with the current inactivity duration;
3. records an :class:`EvaluationSnapshot`;
4. applies the acceptance threshold and the confirmation window.

Debounce state machine::

    AWAKE ──candidate ≥ threshold──▶ CANDIDATE(since) ──elapsed ≥ window──▶ CONFIRMED
      ▲                                   │                                   │
      └──── awake / below threshold / missing data (clears provisional start) ┘

``CONFIRMED`` is not latched: every call recomputes from fresh data, and
keeps returning ``True`` while the candidate streak continues.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Callable

import structlog

from sleep_sentinel.collectors.base import HealthDataSource
from sleep_sentinel.models import (
    DecisionOutcome,
    DetectionConfig,
    EvaluationSnapshot,
    SignalKind,
    clamp_min_probability,
    utcnow,
)
from sleep_sentinel.monitors.estimator import EstimatorThresholds, SleepStateEstimator
from sleep_sentinel.monitors.inactivity import InactivityTracker

if TYPE_CHECKING:
    from sleep_sentinel.monitors.background import AlertCallback, BackgroundTriggerAdapter

logger = structlog.get_logger(__name__)


class SleepDetectionEngine:
    """Turn noisy per-sample sleep states into a stable "alert now" decision.

    One engine instance is shared by the periodic poll loop and background
    data-change triggers, so both paths advance the same debounce state.
    Evaluations are serialised with an :class:`asyncio.Lock`.

    Usage::

        engine = SleepDetectionEngine(source)
        if await engine.evaluate():
            await dispatcher.dispatch(alert)
    """

    def __init__(
        self,
        source: HealthDataSource,
        *,
        config: DetectionConfig | None = None,
        estimator: SleepStateEstimator | None = None,
        inactivity_tracker: InactivityTracker | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._source = source
        self._config = config or DetectionConfig()
        self._estimator = estimator or SleepStateEstimator(
            EstimatorThresholds(inactivity_requirement=self._config.inactivity_requirement)
        )
        self._tracker = inactivity_tracker or InactivityTracker(clock)
        self._clock = clock

        self._lock = asyncio.Lock()
        self._min_candidate_probability = self._config.min_candidate_probability
        self._provisional_asleep_start: datetime | None = None
        self._last_snapshot: EvaluationSnapshot | None = None
        self._background: BackgroundTriggerAdapter | None = None

    # ── Configuration ─────────────────────────────────────────

    @property
    def config(self) -> DetectionConfig:
        return self._config

    @property
    def min_candidate_probability(self) -> float:
        return self._min_candidate_probability

    def set_min_candidate_probability(self, value: float) -> float:
        """Set the acceptance threshold, clamped to ``[0.1, 1.0]``.

        Applies from the next evaluation; an in-progress debounce streak is
        kept.  Returns the effective value.
        """
        clamped = clamp_min_probability(value)
        if clamped != self._min_candidate_probability:
            logger.info(
                "detection.threshold_updated",
                previous=self._min_candidate_probability,
                threshold=clamped,
            )
            self._min_candidate_probability = clamped
        return clamped

    # ── Interaction / diagnostics ─────────────────────────────

    def note_interaction(self) -> None:
        self._tracker.note_interaction()

    @property
    def inactivity_tracker(self) -> InactivityTracker:
        return self._tracker

    def last_snapshot(self) -> EvaluationSnapshot | None:
        return self._last_snapshot

    # ── Background delivery ───────────────────────────────────

    def register_background_observers(self, alert_callback: AlertCallback) -> list[SignalKind]:
        """Re-evaluate on health-platform data changes and alert on confirmation.

        Idempotent and best-effort; returns the signal kinds subscribed so far.
        """
        from sleep_sentinel.monitors.background import BackgroundTriggerAdapter

        if self._background is None:
            self._background = BackgroundTriggerAdapter(self, self._source)
        return self._background.register(alert_callback)

    # ── Evaluation ────────────────────────────────────────────

    async def evaluate(self) -> bool:
        """Return ``True`` when sleep has been sustained for the confirmation window."""
        confirmed, _ = await self.evaluate_with_snapshot()
        return confirmed

    async def evaluate_with_snapshot(self) -> tuple[bool, EvaluationSnapshot]:
        """Evaluate and return the decision together with the snapshot it produced."""
        async with self._lock:
            return await self._evaluate_locked()

    async def _evaluate_locked(self) -> tuple[bool, EvaluationSnapshot]:
        now = self._clock()
        window_start = now - self._config.lookback_window

        heart_rates, energy_samples = await asyncio.gather(
            self._fetch(SignalKind.HEART_RATE, window_start, now),
            self._fetch(SignalKind.ACTIVE_ENERGY, window_start, now),
        )
        # No suspension point below: a cancelled call never mutates state.

        inactivity = self._tracker.current_inactivity_duration()
        had_missing_data = not heart_rates and not energy_samples

        state, probability, features = self._estimator.evaluate(
            heart_rates, energy_samples, inactivity
        )
        candidate = state.candidate_probability
        threshold = self._min_candidate_probability

        logger.debug(
            "detection.signals",
            heart_rate_count=features.heart_rate_count,
            heart_rate_median=features.heart_rate_median,
            energy_count=features.energy_count,
            total_energy=round(features.total_energy, 2),
            inactivity_seconds=int(features.inactivity_seconds),
            missing_data=had_missing_data,
            state=state.kind.value,
            probability=round(probability, 2),
        )

        if had_missing_data:
            outcome = DecisionOutcome.MISSING_DATA
        elif candidate is None:
            outcome = DecisionOutcome.AWAKE
        elif candidate < threshold:
            outcome = DecisionOutcome.BELOW_THRESHOLD
        else:
            outcome = None

        sustained_seconds: float | None = None
        if outcome is not None:
            self._provisional_asleep_start = None
            confirmed = False
        else:
            if self._provisional_asleep_start is None:
                self._provisional_asleep_start = now
                logger.info("detection.debounce_started", at=now.isoformat())
            sustained = now - self._provisional_asleep_start
            sustained_seconds = sustained.total_seconds()
            confirmed = sustained >= self._config.confirmation_window
            outcome = DecisionOutcome.CONFIRMED if confirmed else DecisionOutcome.PENDING

        snapshot = EvaluationSnapshot(
            timestamp=now,
            probability=None if had_missing_data else probability,
            state=state,
            had_missing_data=had_missing_data,
            decision=outcome,
            sustained_seconds=sustained_seconds,
            features=features,
        )
        self._last_snapshot = snapshot

        logger.info(
            "detection.evaluated",
            decision=outcome.value,
            state=state.kind.value,
            probability=snapshot.probability,
            threshold=threshold,
            sustained_seconds=sustained_seconds,
            confirmation_seconds=self._config.confirmation_window.total_seconds(),
        )
        return confirmed, snapshot

    async def _fetch(
        self,
        kind: SignalKind,
        window_start: datetime,
        window_end: datetime,
    ) -> list[float]:
        """Fetch samples, degrading any failure to an empty list."""
        try:
            samples = await self._source.fetch_samples(kind, window_start, window_end)
        except Exception as exc:
            logger.warning(
                "detection.fetch_failed",
                kind=kind.value,
                source=self._source.name,
                error=str(exc),
            )
            return []
        return list(samples or [])
