"""Source registry — discover and instantiate health data sources by name."""

from __future__ import annotations

from typing import Type

from sleep_sentinel.collectors.base import HealthDataSource
from sleep_sentinel.collectors.fitbit import FitbitHealthSource
from sleep_sentinel.collectors.memory import InMemoryHealthSource

# ── Registry ──────────────────────────────────────────────────

_REGISTRY: dict[str, Type[HealthDataSource]] = {
    InMemoryHealthSource.name: InMemoryHealthSource,
    FitbitHealthSource.name: FitbitHealthSource,
}


def register_source(name: str, cls: Type[HealthDataSource]) -> None:
    """Register a new source class under *name*."""
    _REGISTRY[name] = cls


def get_source(name: str) -> HealthDataSource:
    """Instantiate and return the source registered as *name*.

    Raises :class:`ValueError` if no source is registered.
    """
    cls = _REGISTRY.get(name)
    if cls is None:
        raise ValueError(
            f"No health source registered for {name!r}. "
            f"Available: {sorted(_REGISTRY)}"
        )
    return cls()


def available_sources() -> list[str]:
    return list(_REGISTRY.keys())
