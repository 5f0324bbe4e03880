"""
spikesync.api.routes.auth — Spotify OAuth (PKCE) login & callback
===================================================================

``GET /auth/login`` sends the browser to Spotify's consent screen;
``GET /auth/callback`` validates the returned state, exchanges the code
and writes the tokens into ``.env``.
"""

from __future__ import annotations

import logging
import os

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse, RedirectResponse

from spikesync.api.deps import get_auth_store, get_config_service
from spikesync.config import ConfigError, ConfigService
from spikesync.constants import DEFAULT_ENV_PATH, DEFAULT_REDIRECT_URI, DEFAULT_SCOPES
from spikesync.services.auth_service import (
    AuthError,
    PendingAuthStore,
    build_authorize_url,
    encode_state,
    exchange_code,
    new_pkce_pair,
    upsert_env_tokens,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


def _oauth_env() -> tuple[str, str]:
    """Return ``(client_id, redirect_uri)`` or raise a clear 500."""
    client_id = os.getenv("SPOTIFY_CLIENT_ID", "").strip()
    if not client_id:
        raise HTTPException(
            status_code=500,
            detail="Spotify OAuth is not configured: missing SPOTIFY_CLIENT_ID",
        )
    redirect_uri = os.getenv("SPOTIFY_REDIRECT_URI", "").strip() or DEFAULT_REDIRECT_URI
    return client_id, redirect_uri


def _scopes(service: ConfigService) -> list[str]:
    try:
        configured = service.get().spotify.scopes
    except ConfigError:
        configured = []
    return list(configured or DEFAULT_SCOPES)


@router.get("/login")
async def login(
    service: ConfigService = Depends(get_config_service),
    store: PendingAuthStore = Depends(get_auth_store),
):
    """Redirect to the Spotify consent screen."""
    client_id, redirect_uri = _oauth_env()

    verifier, challenge = new_pkce_pair()
    state = encode_state(redirect_uri)
    store.put(state, verifier)

    url = build_authorize_url(client_id, redirect_uri, _scopes(service), challenge, state)
    return RedirectResponse(url)


@router.get("/callback")
async def callback(
    state: str | None = None,
    code: str | None = None,
    error: str | None = None,
    store: PendingAuthStore = Depends(get_auth_store),
):
    """Exchange the authorization code for tokens and persist them."""
    client_id, redirect_uri = _oauth_env()

    if not state:
        raise HTTPException(400, "Missing state parameter")
    verifier = store.consume(state)
    if verifier is None:
        raise HTTPException(400, "State mismatch or expired authorization; start again")
    if error:
        raise HTTPException(400, f"Authorization failed: {error}")
    if not code:
        raise HTTPException(400, "Missing authorization code")

    try:
        tokens = await exchange_code(code, verifier, redirect_uri, client_id)
    except AuthError as exc:
        logger.error("Spotify token exchange failed: %s", exc)
        raise HTTPException(502, "Spotify token exchange failed")

    upsert_env_tokens(os.getenv("SPIKESYNC_ENV_FILE", DEFAULT_ENV_PATH), tokens)
    return HTMLResponse(
        "<html><body><h2>Spotify authorization complete.</h2>"
        "<p>Tokens were saved to .env. Restart SpikeSync to use them, "
        "then close this window.</p></body></html>"
    )
