"""FastAPI application — monitoring control, interactions, ingest and webhooks.

This module wires together all infrastructure:
- Health data source (in-memory or Fitbit)
- Sleep detection engine + background data-change triggers
- Notification dispatcher
- Monitoring session (poll loop)
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Response

from sleep_sentinel.api.middleware import setup_middleware
from sleep_sentinel.api.schemas import FitbitNotification, SamplesRequest, SettingsRequest
from sleep_sentinel.collectors.base import HealthDataSource
from sleep_sentinel.collectors.fitbit import FitbitHealthSource
from sleep_sentinel.collectors.memory import InMemoryHealthSource
from sleep_sentinel.collectors.registry import get_source
from sleep_sentinel.config import get_settings
from sleep_sentinel.models import DetectionConfig
from sleep_sentinel.monitors.detection import SleepDetectionEngine
from sleep_sentinel.notifications.handlers import NotificationDispatcher, create_dispatcher
from sleep_sentinel.scheduler.service import MonitoringService

logger = structlog.get_logger(__name__)

# ── Shared state (initialised in lifespan) ────────────────────

_source: HealthDataSource | None = None
_engine: SleepDetectionEngine | None = None
_dispatcher: NotificationDispatcher | None = None
_service: MonitoringService | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle hooks."""
    global _source, _engine, _dispatcher, _service

    settings = get_settings()

    # 1. Health data source
    _source = get_source(settings.health_source)

    # 2. Detection engine
    _engine = SleepDetectionEngine(_source, config=DetectionConfig.from_settings(settings))

    # 3. Notifications
    _dispatcher = create_dispatcher(settings)

    # 4. Background data-change triggers (best effort)
    if settings.background_observers_enabled:
        kinds = _engine.register_background_observers(_dispatcher.dispatch)
        logger.info("server.background_observers", kinds=[k.value for k in kinds])

    # 5. Monitoring session
    _service = MonitoringService(_engine, alert_callback=_dispatcher.dispatch)
    if settings.monitoring_enabled:
        await _service.start()

    logger.info("server.started", source=_source.name, port=settings.api_port)

    yield  # ← application runs

    # Shutdown
    await _service.stop()
    await _source.close()
    logger.info("server.stopped")


app = FastAPI(
    title="Sleep Sentinel API",
    description="Drowsiness detection from wearable heart-rate, activity and interaction signals.",
    version="0.1.0",
    lifespan=lifespan,
)

setup_middleware(app)


def _require_service() -> MonitoringService:
    if _service is None:
        raise HTTPException(503, "Monitoring service not ready.")
    return _service


def _require_engine() -> SleepDetectionEngine:
    if _engine is None:
        raise HTTPException(503, "Detection engine not ready.")
    return _engine


# ── System ────────────────────────────────────────────────────

@app.get("/health", tags=["system"])
async def health():
    return {"status": "ok", "source": _source.name if _source else None}


@app.get("/status", tags=["monitoring"])
async def status():
    return _require_service().status


# ── Monitoring session ───────────────────────────────────────

@app.post("/monitoring/start", tags=["monitoring"])
async def start_monitoring():
    service = _require_service()
    await service.start()
    return service.status


@app.post("/monitoring/stop", tags=["monitoring"])
async def stop_monitoring():
    service = _require_service()
    await service.stop()
    return service.status


@app.post("/evaluate", tags=["monitoring"])
async def evaluate():
    """Run one on-demand evaluation through the monitoring session."""
    service = _require_service()
    sleeping, snapshot = await service.run_check_with_snapshot()
    return {"sleeping": sleeping, "snapshot": snapshot.model_dump(mode="json")}


@app.get("/logs", tags=["monitoring"])
async def logs():
    return [e.model_dump(mode="json") for e in _require_service().logs]


@app.put("/settings", tags=["monitoring"])
async def update_settings(req: SettingsRequest):
    service = _require_service()
    if req.min_probability is not None:
        service.update_min_probability(req.min_probability)
    if req.check_interval_minutes is not None:
        await service.update_check_interval(req.check_interval_minutes)
    return {
        "min_probability": _require_engine().min_candidate_probability,
        "check_interval_minutes": service.interval_minutes,
    }


@app.post("/alerts/test", status_code=202, tags=["monitoring"])
async def test_alert():
    alert = await _require_service().run_test_alert()
    return {"alert_id": alert.id}


# ── Signals ───────────────────────────────────────────────────

@app.post("/interactions", tags=["signals"])
async def note_interaction():
    """Record a user interaction (screen touch, app foregrounded...)."""
    engine = _require_engine()
    engine.note_interaction()
    return {"inactivity_seconds": engine.inactivity_tracker.current_inactivity_duration().total_seconds()}


@app.post("/samples", status_code=201, tags=["signals"])
async def push_samples(req: SamplesRequest, background: BackgroundTasks):
    """Push samples into the in-memory source; subscribers are notified after the response."""
    if not isinstance(_source, InMemoryHealthSource):
        raise HTTPException(409, "Sample ingest requires the in-memory health source.")
    count = _source.record(req.kind, req.values, timestamp=req.timestamp)
    if count:
        background.add_task(_source.notify_changed, req.kind)
    return {"kind": req.kind.value, "stored": count}


# ── Fitbit subscriber webhook ────────────────────────────────

@app.get("/webhooks/fitbit", tags=["webhooks"])
async def verify_fitbit_subscriber(verify: str = Query(...)):
    """Fitbit subscriber verification: 204 for the right code, 404 otherwise."""
    if FitbitHealthSource.verify_subscriber(verify):
        return Response(status_code=204)
    raise HTTPException(404, "Unknown verification code.")


@app.post("/webhooks/fitbit", status_code=204, tags=["webhooks"])
async def fitbit_notification(notifications: list[FitbitNotification], background: BackgroundTasks):
    """Receive Fitbit subscription notifications and re-evaluate off the poll cycle."""
    if not isinstance(_source, FitbitHealthSource):
        raise HTTPException(404, "Fitbit source not configured.")
    # Fitbit expects a reply within seconds; evaluation runs after the response.
    for collection_type in {n.collectionType for n in notifications}:
        background.add_task(_source.notify_changed, collection_type)
    return Response(status_code=204)
