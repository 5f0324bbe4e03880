"""
spikesync.constants — Shared Constants
=======================================

Single source of truth for service endpoints, default scopes and the
strict-mode allow-list.  Import from here instead of repeating literals
in services and routes.
"""

from __future__ import annotations

from spikesync.engine.events import EventKey

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_ENV_PATH = ".env"

# ---------------------------------------------------------------------------
# Spotify endpoints
# ---------------------------------------------------------------------------
SPOTIFY_API_BASE = "https://api.spotify.com/v1"
SPOTIFY_AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"

DEFAULT_SCOPES: tuple[str, ...] = (
    "user-read-email",
    "user-read-private",
    "user-read-playback-state",
    "user-modify-playback-state",
)

DEFAULT_REDIRECT_URI = "http://127.0.0.1:42813/api/auth/callback"

# ---------------------------------------------------------------------------
# Compliance — events that may drive playback while strict mode is on
# ---------------------------------------------------------------------------
APPROVED_EVENTS: frozenset[EventKey] = frozenset({
    EventKey.ROUND_START,
    EventKey.ROUND_END_WIN,
    EventKey.ROUND_END_LOSS,
    EventKey.ACE,
    EventKey.CLUTCH,
    EventKey.MULTIKILL,
    EventKey.HEADSHOT,
    EventKey.DEATH,
    EventKey.SPIKE_PLANTED,
    EventKey.SPIKE_DEFUSED,
    EventKey.SPIKE_DETONATED,
    EventKey.MATCH_VICTORY,
    EventKey.MATCH_DEFEAT,
    EventKey.MATCH_DRAW,
})

# Consecutive MissingConfigurationError hits on one key before we shout
MISSING_CONFIG_ALERT_THRESHOLD = 3
