"""
spikesync.api.main — FastAPI application entry point
=====================================================

Run with::

    python -m spikesync

or, for development::

    uvicorn spikesync.api.main:app --reload --port 42813

The lifespan loads the config, starts the telemetry feed and the
orchestrator, and parks them on ``app.state`` for the routes.  A missing
Spotify token does not stop the API from serving: the orchestrator stays
down (its routes answer 503) while ``/api/auth/login`` remains reachable.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from spikesync.api.routes.auth import router as auth_router  # noqa: E402
from spikesync.api.routes.config import router as config_router  # noqa: E402
from spikesync.api.routes.playback import router as playback_router  # noqa: E402
from spikesync.api.routes.telemetry import router as telemetry_router  # noqa: E402
from spikesync.config import ConfigService  # noqa: E402
from spikesync.services.auth_service import PendingAuthStore  # noqa: E402
from spikesync.services.orchestrator import ClientFactory, Orchestrator  # noqa: E402
from spikesync.services.playback import (  # noqa: E402
    PlaybackError,
    SpotifyCredentials,
    create_playback_client,
)
from spikesync.services.telemetry import TelemetryFeed  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Origins allowed to call the API (the Web Playback SDK page, overlays)."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if not raw:
        return []
    return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]


async def _prepare_device(orchestrator: Orchestrator) -> None:
    try:
        await orchestrator.prepare_device()
    except PlaybackError as exc:
        logger.error("Playback device unavailable: %s", exc)
    except Exception:
        logger.exception("Playback device preparation failed")
    else:
        logger.info("Playback device ready")


def create_app(
    config_path: str | Path | None = None,
    *,
    client_factory: ClientFactory = create_playback_client,
    credentials: SpotifyCredentials | None = None,
) -> FastAPI:
    """Build the API.  Nothing is loaded until the lifespan starts."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config_service = ConfigService(config_path)
        config = config_service.load()

        feed = TelemetryFeed(mock_mode=config.developer.mock_mode)
        orchestrator = Orchestrator(
            config_service,
            feed,
            client_factory=client_factory,
            credentials=credentials,
        )

        app.state.config_service = config_service
        app.state.feed = feed
        app.state.auth_store = PendingAuthStore()
        app.state.orchestrator = None

        device_task: asyncio.Task | None = None
        try:
            await orchestrator.start(prepare_device=False)
        except PlaybackError as exc:
            logger.error("Orchestrator not started: %s", exc)
        else:
            app.state.orchestrator = orchestrator
            device_task = asyncio.create_task(_prepare_device(orchestrator))
            logger.info(
                "SpikeSync API started (profile: %s, mode: %s)",
                config.active_profile,
                "mock" if config.developer.mock_mode else config.spotify.playback_mode,
            )

        yield

        logger.info("SpikeSync API shutting down")
        if device_task is not None and not device_task.done():
            device_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await device_task
        if app.state.orchestrator is not None:
            await orchestrator.stop()
            app.state.orchestrator = None

    app = FastAPI(
        title="SpikeSync API",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(telemetry_router, prefix="/api")
    app.include_router(playback_router, prefix="/api")
    app.include_router(config_router, prefix="/api")
    app.include_router(auth_router, prefix="/api")

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
