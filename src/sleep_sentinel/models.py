"""Shared Pydantic models used across the framework."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

if TYPE_CHECKING:
    from sleep_sentinel.config import Settings

MIN_PROBABILITY_FLOOR = 0.1
MIN_PROBABILITY_CEILING = 1.0


def clamp_min_probability(value: float) -> float:
    """Clamp an acceptance threshold to the supported ``[0.1, 1.0]`` band."""
    return max(MIN_PROBABILITY_FLOOR, min(MIN_PROBABILITY_CEILING, value))


def utcnow() -> datetime:
    return datetime.now(UTC)


# ── Enums ─────────────────────────────────────────────────────

class SignalKind(str, Enum):
    """Signal streams the detector reads from the health platform."""
    HEART_RATE = "heart_rate"
    ACTIVE_ENERGY = "active_energy"

    @property
    def unit(self) -> str:
        return "bpm" if self is SignalKind.HEART_RATE else "kcal"


class SleepStateKind(str, Enum):
    AWAKE = "awake"
    DROWSY = "drowsy"
    LIKELY_ASLEEP = "likely_asleep"


class DecisionOutcome(str, Enum):
    """Why an evaluation returned the boolean it did."""
    AWAKE = "awake"
    MISSING_DATA = "missing_data"
    BELOW_THRESHOLD = "below_threshold"
    PENDING = "pending"
    CONFIRMED = "confirmed"


class AlertSource(str, Enum):
    POLL = "poll"
    BACKGROUND = "background"
    TEST = "test"


# ── Sleep state ───────────────────────────────────────────────

class SleepState(BaseModel):
    """Qualitative sleep state.

    ``AWAKE`` carries no probability; ``DROWSY`` and ``LIKELY_ASLEEP`` always
    carry the probability they were classified with.
    """

    model_config = ConfigDict(frozen=True)

    kind: SleepStateKind
    probability: float | None = Field(default=None, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_probability(self) -> SleepState:
        if self.kind is SleepStateKind.AWAKE and self.probability is not None:
            raise ValueError("awake state carries no probability")
        if self.kind is not SleepStateKind.AWAKE and self.probability is None:
            raise ValueError(f"{self.kind.value} state requires a probability")
        return self

    @classmethod
    def awake(cls) -> SleepState:
        return cls(kind=SleepStateKind.AWAKE)

    @classmethod
    def drowsy(cls, probability: float) -> SleepState:
        return cls(kind=SleepStateKind.DROWSY, probability=probability)

    @classmethod
    def likely_asleep(cls, probability: float) -> SleepState:
        return cls(kind=SleepStateKind.LIKELY_ASLEEP, probability=probability)

    @property
    def candidate_probability(self) -> float | None:
        """Probability to test against the acceptance threshold, if any."""
        return self.probability


# ── Evaluation diagnostics ────────────────────────────────────

class SignalFeatures(BaseModel):
    """Intermediate values the estimator derived from one batch of samples."""

    model_config = ConfigDict(frozen=True)

    heart_rate_count: int = 0
    heart_rate_median: float | None = None
    energy_count: int = 0
    total_energy: float = 0.0
    inactivity_seconds: float = 0.0
    low_heart_rate: bool = False
    very_low_motion: bool = False
    sufficient_inactivity: bool = False


class EvaluationSnapshot(BaseModel):
    """Result of the most recent evaluation, kept for logs and status views.

    ``probability`` is ``None`` when neither signal stream returned samples.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    probability: float | None
    state: SleepState
    had_missing_data: bool
    decision: DecisionOutcome
    sustained_seconds: float | None = None
    features: SignalFeatures | None = None


# ── Alerts ────────────────────────────────────────────────────

class SleepAlert(BaseModel):
    """A confirmed sleep detection handed to the alert callback."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source: AlertSource
    probability: float | None = None
    state: SleepState | None = None
    message: str = "Sleep signature detected. Time to move!"
    timestamp: datetime = Field(default_factory=utcnow)


# ── Detection configuration ───────────────────────────────────

class DetectionConfig(BaseModel):
    """Tunables of the decision engine."""

    min_candidate_probability: float = 0.7
    confirmation_window: timedelta = timedelta(minutes=12)
    lookback_window: timedelta = timedelta(minutes=15)
    inactivity_requirement: timedelta = timedelta(minutes=10)

    @field_validator("min_candidate_probability")
    @classmethod
    def _clamp_probability(cls, v: float) -> float:
        return clamp_min_probability(v)

    @field_validator("confirmation_window", "lookback_window", "inactivity_requirement")
    @classmethod
    def _non_negative(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("durations must not be negative")
        return v

    @classmethod
    def from_settings(cls, settings: Settings) -> DetectionConfig:
        return cls(
            min_candidate_probability=settings.min_candidate_probability,
            confirmation_window=timedelta(minutes=settings.confirmation_window_minutes),
            lookback_window=timedelta(minutes=settings.lookback_window_minutes),
            inactivity_requirement=timedelta(minutes=settings.inactivity_requirement_minutes),
        )
