"""
spikesync.api.routes.config — Config summary, reload & profile switch
=======================================================================
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from spikesync.api.deps import get_config_service
from spikesync.config import ConfigError, ConfigService

router = APIRouter(prefix="/config", tags=["config"])
logger = logging.getLogger(__name__)


class ProfileSelection(BaseModel):
    profile: str


@router.get("")
def get_config_summary(service: ConfigService = Depends(get_config_service)):
    try:
        cfg = service.get()
    except ConfigError as exc:
        raise HTTPException(503, str(exc))

    profile = cfg.profiles[cfg.active_profile]
    return {
        "version": cfg.version,
        "active_profile": cfg.active_profile,
        "profile_name": profile.name,
        "playback_mode": cfg.spotify.playback_mode,
        "mock_mode": cfg.developer.mock_mode,
        "strict_mode": cfg.compliance.strict_mode,
        "enabled_events": sorted(k.value for k, e in cfg.events.items() if e.enabled),
        "disabled_events": sorted(k.value for k, e in cfg.events.items() if not e.enabled),
    }


@router.post("/reload")
def reload_config(service: ConfigService = Depends(get_config_service)):
    """Re-read the config file and push it to the rule engine."""
    try:
        cfg = service.reload()
    except ConfigError as exc:
        logger.warning("Config reload rejected: %s", exc)
        raise HTTPException(400, str(exc))
    return {"status": "reloaded", "active_profile": cfg.active_profile}


@router.post("/active-profile")
def set_active_profile(
    body: ProfileSelection,
    service: ConfigService = Depends(get_config_service),
):
    """Switch listener profile and write the choice back to the config file."""
    try:
        cfg = service.get()
    except ConfigError as exc:
        raise HTTPException(503, str(exc))

    if body.profile not in cfg.profiles:
        raise HTTPException(404, f"Unknown profile '{body.profile}' (known: {sorted(cfg.profiles)})")

    service.save(cfg.model_copy(update={"active_profile": body.profile}))
    logger.info("Active profile switched to %s", body.profile)
    return {"status": "saved", "active_profile": body.profile}
