"""Request / response models for the HTTP API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from sleep_sentinel.models import SignalKind


class SamplesRequest(BaseModel):
    """Push samples into the in-memory health source."""
    kind: SignalKind
    values: list[float] = Field(min_length=1)
    timestamp: datetime | None = None


class SettingsRequest(BaseModel):
    min_probability: float | None = None
    check_interval_minutes: float | None = None


class FitbitNotification(BaseModel):
    """One entry of a Fitbit subscription notification body."""
    collectionType: str
    date: str | None = None
    ownerId: str | None = None
    ownerType: str | None = None
    subscriptionId: str | None = None
