"""
spikesync.services.auth_service — Spotify Authorization Code + PKCE
=====================================================================

Helpers for obtaining a user access token without a client secret:

1. :func:`new_pkce_pair` creates a code verifier and its S256 challenge.
2. :func:`encode_state` packs a nonce plus the local callback URL into the
   OAuth ``state`` parameter (a hosted HTTPS relay page can decode it and
   bounce the browser back to the local listener).
3. :func:`build_authorize_url` produces the consent-screen URL.
4. :func:`exchange_code` / :func:`refresh_access_token` talk to the token
   endpoint.
5. :func:`upsert_env_tokens` writes the tokens into ``.env``.

:class:`PendingAuthStore` remembers in-flight authorizations (one-time
use, 10-minute TTL) between ``/auth/login`` and ``/auth/callback``.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlencode

import httpx
from dotenv import set_key

from spikesync.constants import SPOTIFY_AUTHORIZE_URL, SPOTIFY_TOKEN_URL

logger = logging.getLogger(__name__)

PENDING_AUTH_TTL_SECONDS = 600


class AuthError(RuntimeError):
    """The authorization flow failed (state mismatch, denial, token error)."""


# ---------------------------------------------------------------------------
# PKCE + state encoding
# ---------------------------------------------------------------------------
def base64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def code_challenge(verifier: str) -> str:
    """S256 challenge for *verifier*."""
    return base64url(hashlib.sha256(verifier.encode("ascii")).digest())


def new_pkce_pair() -> tuple[str, str]:
    """Return ``(code_verifier, code_challenge)``."""
    verifier = base64url(secrets.token_bytes(64))
    return verifier, code_challenge(verifier)


def encode_state(local_callback_url: str, nonce: str | None = None) -> str:
    payload = {
        "nonce": nonce or base64url(secrets.token_bytes(16)),
        "localCallbackUrl": local_callback_url,
    }
    return base64url(json.dumps(payload).encode("utf-8"))


def decode_state(value: str) -> dict[str, str] | None:
    """Inverse of :func:`encode_state`; ``None`` for anything malformed."""
    try:
        padded = value + "=" * (-len(value) % 4)
        parsed = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, UnicodeError):
        return None
    if not isinstance(parsed, dict):
        return None
    if not parsed.get("nonce") or not parsed.get("localCallbackUrl"):
        return None
    return parsed


def build_authorize_url(
    client_id: str,
    redirect_uri: str,
    scopes: Iterable[str],
    challenge: str,
    state: str,
) -> str:
    query = urlencode(
        {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "code_challenge_method": "S256",
            "code_challenge": challenge,
            "scope": " ".join(scopes),
            "state": state,
        }
    )
    return f"{SPOTIFY_AUTHORIZE_URL}?{query}"


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TokenSet:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None


async def _post_token(
    data: Mapping[str, str], transport: httpx.AsyncBaseTransport | None
) -> TokenSet:
    async with httpx.AsyncClient(timeout=10, transport=transport) as client:
        resp = await client.post(SPOTIFY_TOKEN_URL, data=dict(data))

    if resp.status_code != 200:
        raise AuthError(
            f"Spotify token endpoint responded with {resp.status_code}: {resp.text[:200]}"
        )
    body = resp.json()
    access_token = body.get("access_token")
    if not access_token:
        raise AuthError("Spotify token endpoint returned no access token")
    return TokenSet(
        access_token=access_token,
        refresh_token=body.get("refresh_token"),
        expires_in=body.get("expires_in"),
        scope=body.get("scope"),
    )


async def exchange_code(
    code: str,
    verifier: str,
    redirect_uri: str,
    client_id: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> TokenSet:
    """Trade an authorization code for tokens."""
    return await _post_token(
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client_id,
            "code_verifier": verifier,
        },
        transport,
    )


async def refresh_access_token(
    refresh_token: str,
    client_id: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> TokenSet:
    """Obtain a fresh access token.  Spotify may rotate the refresh token."""
    tokens = await _post_token(
        {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
        },
        transport,
    )
    if tokens.refresh_token is None:
        tokens = TokenSet(
            access_token=tokens.access_token,
            refresh_token=refresh_token,
            expires_in=tokens.expires_in,
            scope=tokens.scope,
        )
    return tokens


def upsert_env_tokens(env_path: str | Path, tokens: TokenSet) -> None:
    """Write the tokens into *env_path*, keeping every other line."""
    path = Path(env_path)
    path.touch(exist_ok=True)
    set_key(str(path), "SPOTIFY_ACCESS_TOKEN", tokens.access_token, quote_mode="never")
    set_key(str(path), "SPOTIFY_REFRESH_TOKEN", tokens.refresh_token or "", quote_mode="never")
    logger.info("Updated Spotify tokens in %s", path.resolve())
    if not tokens.refresh_token:
        logger.warning(
            "Spotify did not return a refresh token; re-authorize once the "
            "access token expires."
        )


# ---------------------------------------------------------------------------
# Pending authorizations
# ---------------------------------------------------------------------------
class PendingAuthStore:
    """state → code verifier, one-time use with a TTL.  Thread-safe."""

    def __init__(self, ttl_seconds: float = PENDING_AUTH_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._pending: dict[str, tuple[str, float]] = {}

    def put(self, state: str, verifier: str) -> None:
        now = time.monotonic()
        with self._lock:
            self._prune(now)
            self._pending[state] = (verifier, now)

    def consume(self, state: str) -> str | None:
        """Return (and forget) the verifier for *state*, or ``None``."""
        now = time.monotonic()
        with self._lock:
            self._prune(now)
            entry = self._pending.pop(state, None)
        return entry[0] if entry else None

    def _prune(self, now: float) -> None:
        cutoff = now - self.ttl_seconds
        expired = [s for s, (_, created) in self._pending.items() if created < cutoff]
        for s in expired:
            del self._pending[s]
