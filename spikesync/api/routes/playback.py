"""
spikesync.api.routes.playback — Playback device & history
==========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from spikesync.api.deps import get_orchestrator
from spikesync.services.orchestrator import Orchestrator
from spikesync.services.playback import MockPlaybackClient, SpotifyWebPlaybackClient

router = APIRouter(prefix="/playback", tags=["playback"])


class DeviceRegistration(BaseModel):
    device_id: str


def _web_client(orchestrator: Orchestrator) -> SpotifyWebPlaybackClient:
    client = orchestrator.client
    if not isinstance(client, SpotifyWebPlaybackClient):
        raise HTTPException(409, "Playback mode is not web_sdk")
    return client


@router.post("/device")
async def register_device(
    body: DeviceRegistration,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Called by the Web Playback SDK page once its player is ready."""
    _web_client(orchestrator).register_device(body.device_id)
    return {"status": "ok", "device_id": body.device_id}


@router.delete("/device")
async def unregister_device(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Called by the player page on ``not_ready``."""
    _web_client(orchestrator).unregister_device()
    return {"status": "ok"}


@router.get("/history")
async def get_history(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Actions played so far (mock mode only)."""
    client = orchestrator.client
    if not isinstance(client, MockPlaybackClient):
        raise HTTPException(409, "Playback history is only kept in mock mode")
    return [action.to_dict() for action in client.playback_history()]
