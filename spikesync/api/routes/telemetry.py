"""
spikesync.api.routes.telemetry — Host feed ingest
==================================================

The game-side helper posts discrete events and info snapshots here; the
feed normalizes them and the orchestrator takes it from there.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from spikesync.api.deps import get_feed
from spikesync.engine.events import EventKey, NormalizedEvent, RawEvent, now_ms
from spikesync.services.telemetry import FeatureHealth, HealthStatus, TelemetryFeed

router = APIRouter(prefix="/telemetry", tags=["telemetry"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RawEventIn(BaseModel):
    name: str
    data: str = ""
    timestamp: float = 0


class RawEventBatch(BaseModel):
    events: list[RawEventIn] = Field(default_factory=list)


class InfoUpdate(BaseModel):
    info: dict[str, Any] = Field(default_factory=dict)


class FeatureHealthIn(BaseModel):
    feature: str
    status: HealthStatus


class HealthUpdate(BaseModel):
    features: list[FeatureHealthIn]


class MockEventIn(BaseModel):
    key: EventKey
    payload: dict[str, Any] | None = None
    timestamp: float | None = None


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@router.post("/events")
async def post_events(batch: RawEventBatch, feed: TelemetryFeed = Depends(get_feed)):
    """Accept a batch of raw host events."""
    raw = [RawEvent(name=e.name, data=e.data, timestamp=e.timestamp) for e in batch.events]
    delivered = feed.ingest_events(raw)
    return {"received": len(raw), "delivered": delivered}


@router.post("/info")
async def post_info(update: InfoUpdate, feed: TelemetryFeed = Depends(get_feed)):
    """Accept an info snapshot (round outcome lives here)."""
    return {"derived": feed.ingest_info(update.info)}


@router.get("/health")
async def get_health(feed: TelemetryFeed = Depends(get_feed)):
    return [
        {"feature": h.feature, "status": h.status.value, "last_updated": h.last_updated}
        for h in feed.health()
    ]


@router.post("/health")
async def post_health(update: HealthUpdate, feed: TelemetryFeed = Depends(get_feed)):
    now = now_ms()
    feed.update_health(
        [FeatureHealth(f.feature, f.status, last_updated=now) for f in update.features]
    )
    return {"features": len(update.features)}


@router.post("/mock")
async def post_mock_event(body: MockEventIn, feed: TelemetryFeed = Depends(get_feed)):
    """Inject a normalized event directly (mock mode only)."""
    event = NormalizedEvent(
        key=body.key,
        timestamp=body.timestamp if body.timestamp is not None else now_ms(),
        payload=body.payload,
    )
    try:
        feed.push_mock_event(event)
    except RuntimeError as exc:
        raise HTTPException(409, str(exc))
    logger.info("Mock event injected: %s", body.key)
    return {"status": "ok", "key": body.key.value}
