"""Drowsiness detection core.

* **InactivityTracker** — time since the last user interaction.
* **SleepStateEstimator** — fuse heart rate, motion and inactivity into a state.
* **SleepDetectionEngine** — concurrent acquisition, threshold and debounce.
* **BackgroundTriggerAdapter** — re-evaluate on platform data changes.
"""

from sleep_sentinel.monitors.background import AlertCallback, BackgroundTriggerAdapter
from sleep_sentinel.monitors.detection import SleepDetectionEngine
from sleep_sentinel.monitors.estimator import (
    EstimatorThresholds,
    SleepStateEstimator,
    classify,
    estimate,
    median,
)
from sleep_sentinel.monitors.inactivity import InactivityTracker

__all__ = [
    "AlertCallback",
    "BackgroundTriggerAdapter",
    "EstimatorThresholds",
    "InactivityTracker",
    "SleepDetectionEngine",
    "SleepStateEstimator",
    "classify",
    "estimate",
    "median",
]
