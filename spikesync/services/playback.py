"""
spikesync.services.playback — Spotify playback clients
=======================================================

One capability interface, three variants picked at construction time:

* :class:`SpotifyConnectClient` — drives an existing Spotify Connect device
  (desktop app, phone, speaker) through the Web API.
* :class:`SpotifyWebPlaybackClient` — drives the browser-side Web Playback
  SDK player, which registers its device id with our API once it is ready.
* :class:`MockPlaybackClient` — records actions in memory (mock mode, tests).

Every Web API call is funnelled through the client's
:class:`RateLimitedQueue`.  HTTP 429 is translated into
:class:`RateLimitError` so the queue retries the same call after the
server's ``Retry-After``; anything else non-2xx is a terminal
:class:`PlaybackError`.

A 401 is answered once by refreshing the access token (when a refresh
token and client id are known) and repeating the call.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from spikesync.constants import DEFAULT_ENV_PATH, SPOTIFY_API_BASE
from spikesync.engine.rules import ActionType, PlaybackAction
from spikesync.services.auth_service import (
    AuthError,
    TokenSet,
    refresh_access_token,
    upsert_env_tokens,
)
from spikesync.services.dispatch_queue import RateLimitedQueue, RateLimitError

if TYPE_CHECKING:
    from spikesync.config import AppConfig

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_MS = 1_000
HTTP_TIMEOUT_SECONDS = 10
WEB_DEVICE_WAIT_SECONDS = 30.0


class PlaybackError(RuntimeError):
    """A non-rate-limit failure talking to Spotify or locating a device."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PlaybackClient(Protocol):
    async def ensure_device(self) -> None: ...

    async def play(self, action: PlaybackAction) -> None: ...

    async def queue_stinger(self, uri: str) -> None: ...

    async def set_volume(self, scale: float) -> None: ...

    async def aclose(self) -> None: ...


@dataclass(frozen=True, slots=True)
class SpotifyCredentials:
    access_token: str
    client_id: str = ""
    refresh_token: str | None = None

    @classmethod
    def from_env(cls) -> SpotifyCredentials:
        """Read ``SPOTIFY_ACCESS_TOKEN`` / ``_REFRESH_TOKEN`` / ``_CLIENT_ID``."""
        return cls(
            access_token=os.getenv("SPOTIFY_ACCESS_TOKEN", "").strip(),
            client_id=os.getenv("SPOTIFY_CLIENT_ID", "").strip(),
            refresh_token=os.getenv("SPOTIFY_REFRESH_TOKEN", "").strip() or None,
        )


def retry_after_ms(response: httpx.Response, default_ms: float = DEFAULT_RETRY_AFTER_MS) -> float:
    """Parse ``Retry-After`` (seconds) into milliseconds."""
    raw = response.headers.get("retry-after")
    if raw is None:
        return default_ms
    try:
        return max(float(raw), 0.0) * 1000
    except ValueError:
        return default_ms


def volume_percent(scale: float) -> int:
    """Map a 0..1 volume scale onto Spotify's integer 0..100."""
    return round(min(max(scale * 100, 0), 100))


def playback_body(action: PlaybackAction) -> dict[str, Any]:
    if action.type == ActionType.PLAY_TRACK:
        return {"uris": [action.uri]}
    return {"context_uri": action.uri}


# ---------------------------------------------------------------------------
# Shared Web API plumbing
# ---------------------------------------------------------------------------
class _SpotifyApiClient:
    """Bearer-authenticated Web API access, serialized through a queue."""

    def __init__(
        self,
        credentials: SpotifyCredentials,
        *,
        preferred_device_id: str | None = None,
        api_base_url: str = SPOTIFY_API_BASE,
        queue: RateLimitedQueue | None = None,
        default_retry_after_ms: float = DEFAULT_RETRY_AFTER_MS,
        transport: httpx.AsyncBaseTransport | None = None,
        on_tokens_refreshed: Callable[[TokenSet], None] | None = None,
    ) -> None:
        self.credentials = credentials
        self.device_id = preferred_device_id
        self.queue = queue or RateLimitedQueue()
        self.default_retry_after_ms = default_retry_after_ms
        self.on_tokens_refreshed = on_tokens_refreshed
        self._transport = transport
        self.http = httpx.AsyncClient(
            base_url=api_base_url,
            headers={"Authorization": f"Bearer {credentials.access_token}"},
            timeout=HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    def _device_params(self, **extra: Any) -> dict[str, Any]:
        params = dict(extra)
        if self.device_id:
            params["device_id"] = self.device_id
        return params

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self.http.request(method, path, **kwargs)
        if response.status_code == 401 and await self._refresh_access_token():
            response = await self.http.request(method, path, **kwargs)
        if response.status_code == 429:
            raise RateLimitError(retry_after_ms(response, self.default_retry_after_ms))
        if response.is_error:
            raise PlaybackError(
                f"Spotify {method} {path} responded with "
                f"{response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    async def _refresh_access_token(self) -> bool:
        """Swap in a fresh bearer token.  False when no refresh token is held."""
        creds = self.credentials
        if not (creds.refresh_token and creds.client_id):
            return False
        try:
            tokens = await refresh_access_token(
                creds.refresh_token, creds.client_id, transport=self._transport
            )
        except AuthError as exc:
            raise PlaybackError(f"Access token refresh failed: {exc}", status_code=401) from exc

        self.credentials = SpotifyCredentials(
            access_token=tokens.access_token,
            client_id=creds.client_id,
            refresh_token=tokens.refresh_token,
        )
        self.http.headers["Authorization"] = f"Bearer {tokens.access_token}"
        logger.info("Spotify access token refreshed")
        if self.on_tokens_refreshed is not None:
            self.on_tokens_refreshed(tokens)
        return True

    async def _call(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Enqueue one Web API request and wait for its outcome."""
        return await self.queue.enqueue(lambda: self._request(method, path, **kwargs))

    async def queue_stinger(self, uri: str) -> None:
        await self._call("POST", "/me/player/queue", params=self._device_params(uri=uri))
        logger.debug("Queued stinger %s", uri)

    async def set_volume(self, scale: float) -> None:
        percent = volume_percent(scale)
        await self._call(
            "PUT",
            "/me/player/volume",
            params=self._device_params(volume_percent=percent),
        )
        logger.info("Volume set to %d%%", percent)

    async def _start_playback(self, action: PlaybackAction) -> None:
        await self._call(
            "PUT",
            "/me/player/play",
            json=playback_body(action),
            params=self._device_params(),
        )

    async def aclose(self) -> None:
        await self.queue.aclose()
        await self.http.aclose()


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------
class SpotifyConnectClient(_SpotifyApiClient):
    """Controls an existing Spotify Connect device."""

    async def ensure_device(self) -> None:
        response = await self._call("GET", "/me/player/devices")
        devices: list[dict[str, Any]] = response.json().get("devices") or []
        if not devices:
            raise PlaybackError("No Spotify Connect devices available")

        target = None
        if self.device_id:
            target = next((d for d in devices if d.get("id") == self.device_id), None)
        if target is None:
            target = next((d for d in devices if not d.get("is_restricted")), None)
        if target is None:
            raise PlaybackError("No controllable Spotify device found")

        self.device_id = target["id"]
        logger.info("Using Spotify device %s (%s)", target.get("name", "?"), self.device_id)

        if not target.get("is_active"):
            await self._call(
                "PUT", "/me/player", json={"device_ids": [self.device_id], "play": False}
            )
            logger.info("Transferred playback to %s", self.device_id)

    async def play(self, action: PlaybackAction) -> None:
        await self._start_playback(action)


class SpotifyWebPlaybackClient(_SpotifyApiClient):
    """Controls the Web Playback SDK player hosted in a browser page.

    The page creates the player with our access token and reports its
    device id (``POST /api/playback/device``) once the SDK fires ``ready``.
    """

    def __init__(
        self,
        credentials: SpotifyCredentials,
        *,
        device_wait_seconds: float = WEB_DEVICE_WAIT_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(credentials, **kwargs)
        self.device_wait_seconds = device_wait_seconds
        self._ready = asyncio.Event()

    @property
    def device_ready(self) -> bool:
        return self._ready.is_set()

    def register_device(self, device_id: str) -> None:
        self.device_id = device_id
        self._ready.set()
        logger.info("Web Playback device registered: %s", device_id)

    def unregister_device(self) -> None:
        self._ready.clear()
        logger.info("Web Playback device %s went away", self.device_id)

    async def ensure_device(self) -> None:
        if self._ready.is_set():
            return
        try:
            await asyncio.wait_for(self._ready.wait(), self.device_wait_seconds)
        except TimeoutError as exc:
            raise PlaybackError(
                "Web Playback device has not registered. Open the player page "
                "so the SDK can connect."
            ) from exc

    async def play(self, action: PlaybackAction) -> None:
        if not self._ready.is_set():
            await self.ensure_device()
        await self._start_playback(action)


class MockPlaybackClient:
    """Logs every call and keeps a history of played actions."""

    def __init__(self) -> None:
        self._history: list[PlaybackAction] = []
        self.stingers: list[str] = []
        self.volume: float | None = None

    async def ensure_device(self) -> None:
        return None

    async def play(self, action: PlaybackAction) -> None:
        self._history.append(action)
        logger.info("[mock] play %s (%s)", action.uri, action.context.event)

    async def queue_stinger(self, uri: str) -> None:
        self.stingers.append(uri)
        logger.info("[mock] stinger %s", uri)

    async def set_volume(self, scale: float) -> None:
        self.volume = scale
        logger.info("[mock] volume %d%%", volume_percent(scale))

    def playback_history(self) -> list[PlaybackAction]:
        return list(self._history)

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------
def _persist_tokens(tokens: TokenSet) -> None:
    upsert_env_tokens(os.getenv("SPIKESYNC_ENV_FILE", DEFAULT_ENV_PATH), tokens)


def create_playback_client(
    config: AppConfig,
    credentials: SpotifyCredentials | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PlaybackClient:
    """Build the client variant selected by *config*.

    Raises
    ------
    PlaybackError
        If a real client is requested without an access token.
    """
    if config.developer.mock_mode:
        logger.info("Mock mode: using MockPlaybackClient")
        return MockPlaybackClient()

    creds = credentials or SpotifyCredentials.from_env()
    if not creds.access_token:
        raise PlaybackError(
            "Missing Spotify access token. Visit /api/auth/login to authorize, "
            "then restart."
        )

    options: dict[str, Any] = {
        "preferred_device_id": config.spotify.preferred_device_id,
        "api_base_url": config.spotify.api_base_url,
        "queue": RateLimitedQueue(task_timeout_ms=config.dispatch.task_timeout_ms),
        "default_retry_after_ms": config.dispatch.default_retry_after_ms,
        "transport": transport,
        "on_tokens_refreshed": _persist_tokens,
    }
    if config.spotify.playback_mode == "remote_device":
        return SpotifyConnectClient(creds, **options)
    return SpotifyWebPlaybackClient(creds, **options)
