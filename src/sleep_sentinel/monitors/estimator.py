"""Signal fusion — heart rate, motion energy and inactivity to a sleep state.

The estimator is a pure function of its inputs:

1. **Robust features** — median heart rate (resilient to single-sample
   spikes), total active energy over the window, and elapsed inactivity.
2. **Binary signals** — low heart rate, very low motion, sufficient
   inactivity.
3. **Weighted combination** — each signal adds a fixed weight; the weights
   sum to 1.15 so two agreeing signals plus inactivity saturate at 1.0.
4. **Classification** — map the probability and the signals onto
   :class:`SleepState`.
"""

from __future__ import annotations

import statistics
from datetime import timedelta
from typing import Sequence

from pydantic import BaseModel, ConfigDict

from sleep_sentinel.models import SignalFeatures, SleepState

# ── Constants ─────────────────────────────────────────────────

# Signal weights; their sum exceeds 1.0 and the result is clamped.
_WEIGHT_LOW_HEART_RATE = 0.45
_WEIGHT_VERY_LOW_MOTION = 0.35
_WEIGHT_SUFFICIENT_INACTIVITY = 0.35

LIKELY_ASLEEP_PROBABILITY = 0.9
DROWSY_PROBABILITY = 0.55


class EstimatorThresholds(BaseModel):
    """Per-signal cut-offs.  Defaults are conservative to avoid false positives."""

    model_config = ConfigDict(frozen=True)

    low_heart_rate_bpm: float = 60.0
    low_motion_energy_kcal: float = 3.0  # summed over the lookback window
    inactivity_requirement: timedelta = timedelta(minutes=10)


# ── Feature helpers ──────────────────────────────────────────


def median(values: Sequence[float]) -> float | None:
    """Return the median of *values*, or ``None`` when empty.

    Even-length input yields the mean of the two middle sorted values.
    """
    if not values:
        return None
    return float(statistics.median(values))


def derive_features(
    heart_rates: Sequence[float],
    energy_samples: Sequence[float],
    inactivity: timedelta,
    thresholds: EstimatorThresholds,
) -> SignalFeatures:
    """Compute the robust features and binary signals for one batch."""
    heart_rate_median = median(heart_rates)
    total_energy = float(sum(energy_samples))

    low_heart_rate = (
        heart_rate_median is not None
        and heart_rate_median < thresholds.low_heart_rate_bpm
    )
    # Motion only counts when we actually have motion samples.
    very_low_motion = (
        len(energy_samples) > 0
        and total_energy < thresholds.low_motion_energy_kcal
    )
    sufficient_inactivity = inactivity >= thresholds.inactivity_requirement

    return SignalFeatures(
        heart_rate_count=len(heart_rates),
        heart_rate_median=heart_rate_median,
        energy_count=len(energy_samples),
        total_energy=total_energy,
        inactivity_seconds=inactivity.total_seconds(),
        low_heart_rate=low_heart_rate,
        very_low_motion=very_low_motion,
        sufficient_inactivity=sufficient_inactivity,
    )


def combine(features: SignalFeatures) -> float:
    """Weighted sum of the binary signals, clamped to ``[0, 1]``."""
    probability = 0.0
    if features.low_heart_rate:
        probability += _WEIGHT_LOW_HEART_RATE
    if features.very_low_motion:
        probability += _WEIGHT_VERY_LOW_MOTION
    if features.sufficient_inactivity:
        probability += _WEIGHT_SUFFICIENT_INACTIVITY
    return max(0.0, min(1.0, probability))


def classify(
    probability: float,
    *,
    low_heart_rate: bool,
    very_low_motion: bool,
    sufficient_inactivity: bool,
) -> SleepState:
    """Map a probability and its supporting signals to a :class:`SleepState`.

    Evaluated in priority order:

    * ``LIKELY_ASLEEP`` — probability ≥ 0.9, inactivity, and at least one
      physiological signal agrees;
    * ``DROWSY`` — probability ≥ 0.55;
    * ``AWAKE`` — otherwise.
    """
    if (
        probability >= LIKELY_ASLEEP_PROBABILITY
        and (low_heart_rate or very_low_motion)
        and sufficient_inactivity
    ):
        return SleepState.likely_asleep(probability)
    if probability >= DROWSY_PROBABILITY:
        return SleepState.drowsy(probability)
    return SleepState.awake()


# ── Estimator ─────────────────────────────────────────────────


class SleepStateEstimator:
    """Stateless estimator bound to a set of thresholds.

    Usage::

        estimator = SleepStateEstimator()
        state, probability = estimator.estimate([52, 55, 50], [0.4, 0.3], timedelta(minutes=11))
    """

    def __init__(self, thresholds: EstimatorThresholds | None = None) -> None:
        self.thresholds = thresholds or EstimatorThresholds()

    def evaluate(
        self,
        heart_rates: Sequence[float],
        energy_samples: Sequence[float],
        inactivity: timedelta,
    ) -> tuple[SleepState, float, SignalFeatures]:
        """Like :meth:`estimate`, also returning the derived features."""
        features = derive_features(heart_rates, energy_samples, inactivity, self.thresholds)
        probability = combine(features)
        state = classify(
            probability,
            low_heart_rate=features.low_heart_rate,
            very_low_motion=features.very_low_motion,
            sufficient_inactivity=features.sufficient_inactivity,
        )
        return state, probability, features

    def estimate(
        self,
        heart_rates: Sequence[float],
        energy_samples: Sequence[float],
        inactivity: timedelta,
    ) -> tuple[SleepState, float]:
        """Return the qualitative state and the raw probability behind it."""
        state, probability, _ = self.evaluate(heart_rates, energy_samples, inactivity)
        return state, probability

    def estimate_state(
        self,
        heart_rates: Sequence[float],
        energy_samples: Sequence[float],
        inactivity: timedelta,
    ) -> SleepState:
        return self.estimate(heart_rates, energy_samples, inactivity)[0]


def estimate(
    heart_rates: Sequence[float],
    energy_samples: Sequence[float],
    inactivity: timedelta,
    thresholds: EstimatorThresholds | None = None,
) -> tuple[SleepState, float]:
    """Module-level convenience wrapper around :class:`SleepStateEstimator`."""
    return SleepStateEstimator(thresholds).estimate(heart_rates, energy_samples, inactivity)
