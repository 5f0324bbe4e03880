"""
spikesync.api.deps — FastAPI dependency injection
==================================================

Everything the routes need lives on ``app.state`` (set up by the lifespan
in :mod:`spikesync.api.main`); these providers fetch it per request.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from spikesync.config import ConfigService
from spikesync.services.auth_service import PendingAuthStore
from spikesync.services.orchestrator import Orchestrator
from spikesync.services.telemetry import TelemetryFeed


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Service is not ready")
    return value


def get_feed(request: Request) -> TelemetryFeed:
    return _state(request, "feed")


def get_orchestrator(request: Request) -> Orchestrator:
    return _state(request, "orchestrator")


def get_config_service(request: Request) -> ConfigService:
    return _state(request, "config_service")


def get_auth_store(request: Request) -> PendingAuthStore:
    return _state(request, "auth_store")
