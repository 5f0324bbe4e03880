"""
spikesync.config — YAML Configuration Loader & Change Notifications
=====================================================================

**Why this file exists:**
Everything that tunes *when* music changes (per-event playlists, cooldowns,
debounce windows, listener profiles) lives in ``config.yaml``.  This module
reads it, validates it into typed :class:`AppConfig` objects, and pushes
every accepted change to subscribers so the rule engine can re-seat its
snapshot without a restart.

Keys may be written in snake_case or in the camelCase used by older
``app.config.json`` files (``cooldownMs``, ``playlistUris`` …).

Usage::

    from spikesync.config import ConfigService

    service = ConfigService("config.yaml")
    cfg = service.load()
    unsubscribe = service.on_change(lambda c: print(c.active_profile))
"""

from __future__ import annotations

import enum
import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Literal

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from spikesync.constants import DEFAULT_CONFIG_PATH, SPOTIFY_API_BASE
from spikesync.engine.events import EventKey

if TYPE_CHECKING:
    from spikesync.engine.rules import RuleEngineOptions

logger = logging.getLogger(__name__)

ConfigListener = Callable[["AppConfig"], None]


class ConfigError(ValueError):
    """Configuration file missing, unreadable, or failing validation."""


class InterruptPolicy(enum.StrEnum):
    """How a new playback action should treat whatever is playing now."""
    NEVER = "never"
    DUCK = "duck"
    CROSSFADE = "crossfade"
    IMMEDIATE = "immediate"


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Per-event settings
# ---------------------------------------------------------------------------
class EventConfig(_Model):
    """Settings for one :class:`EventKey`."""

    model_config = ConfigDict(frozen=True)

    enabled: bool
    playlist_uris: list[str] = Field(min_length=1)
    track_uris: list[str] | None = None
    stinger_uri: str | None = None
    cooldown_ms: int = Field(ge=0)
    debounce_ms: int = Field(ge=0)
    interrupt_policy: InterruptPolicy
    multikill_window_ms: int | None = Field(default=None, gt=0)
    min_energy: float | None = Field(default=None, ge=0, le=1)
    max_energy: float | None = Field(default=None, ge=0, le=1)
    min_valence: float | None = Field(default=None, ge=0, le=1)
    max_valence: float | None = Field(default=None, ge=0, le=1)

    @field_validator("playlist_uris")
    @classmethod
    def _no_blank_uris(cls, value: list[str]) -> list[str]:
        if any(not uri for uri in value):
            raise ValueError("playlist URIs must be non-empty strings")
        return value


# Required on EventConfig: an override may omit them but never null them
_NON_NULLABLE_OVERRIDES = frozenset(
    {"enabled", "playlist_uris", "cooldown_ms", "debounce_ms", "interrupt_policy"}
)


class EventOverride(_Model):
    """A partial :class:`EventConfig` layered on top of the base by a profile."""

    model_config = ConfigDict(frozen=True)

    enabled: bool | None = None
    playlist_uris: list[str] | None = Field(default=None, min_length=1)
    track_uris: list[str] | None = None
    stinger_uri: str | None = None
    cooldown_ms: int | None = Field(default=None, ge=0)
    debounce_ms: int | None = Field(default=None, ge=0)
    interrupt_policy: InterruptPolicy | None = None
    multikill_window_ms: int | None = Field(default=None, gt=0)
    min_energy: float | None = Field(default=None, ge=0, le=1)
    max_energy: float | None = Field(default=None, ge=0, le=1)
    min_valence: float | None = Field(default=None, ge=0, le=1)
    max_valence: float | None = Field(default=None, ge=0, le=1)

    @model_validator(mode="after")
    def _required_fields_not_null(self) -> EventOverride:
        nulled = sorted(
            name for name in _NON_NULLABLE_OVERRIDES
            if name in self.model_fields_set and getattr(self, name) is None
        )
        if nulled:
            raise ValueError(f"override cannot set {', '.join(nulled)} to null")
        return self

    def apply_to(self, base: EventConfig) -> EventConfig:
        """Return *base* with every field this override sets replaced."""
        return base.model_copy(update=self.model_dump(exclude_unset=True))


class ProfileConfig(_Model):
    """A named listener profile."""

    model_config = ConfigDict(frozen=True)

    name: str
    energy_bias: float = Field(default=0.0, ge=-1, le=1)
    valence_bias: float = Field(default=0.0, ge=-1, le=1)
    volume_scale: float = Field(default=1.0, ge=0, le=1)
    overrides: dict[EventKey, EventOverride] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Surrounding sections
# ---------------------------------------------------------------------------
class SpotifySettings(_Model):
    playback_mode: Literal["web_sdk", "remote_device"]
    preferred_device_id: str | None = None
    scopes: list[str] = Field(default_factory=list)
    crossfade_ms: int = Field(default=0, ge=0)
    ducking_db: float = Field(default=-12, le=0)
    allow_autoplay: bool = False
    api_base_url: str = SPOTIFY_API_BASE


class ComplianceSettings(_Model):
    strict_mode: bool = Field(default=True, alias="riotStrictMode")
    overlay_enabled: bool = False


class DispatchSettings(_Model):
    # None disables the per-task timeout
    task_timeout_ms: int | None = Field(default=10_000, gt=0)
    default_retry_after_ms: int = Field(default=1_000, ge=0)


class DeveloperSettings(_Model):
    logging_level: Literal["error", "warn", "info", "debug"] = "info"
    mock_mode: bool = False


class PrivacySettings(_Model):
    analytics_opt_in: bool = False
    log_pii: Literal[False] = Field(default=False, alias="logPII")


class AppConfig(_Model):
    """The whole validated configuration document (version 1.0)."""

    version: Literal["1.0"]
    spotify: SpotifySettings
    profiles: dict[str, ProfileConfig] = Field(min_length=1)
    active_profile: str
    events: dict[EventKey, EventConfig]
    compliance: ComplianceSettings = Field(default_factory=ComplianceSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    developer: DeveloperSettings = Field(default_factory=DeveloperSettings)
    privacy: PrivacySettings = Field(default_factory=PrivacySettings)

    @model_validator(mode="after")
    def _active_profile_exists(self) -> AppConfig:
        if self.active_profile not in self.profiles:
            raise ValueError(
                f"active profile '{self.active_profile}' is not defined in profiles "
                f"(known: {sorted(self.profiles)})"
            )
        return self


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------
def parse_config(raw: object) -> AppConfig:
    """Validate an already-decoded document.  Raises :class:`ConfigError`."""
    if not isinstance(raw, dict):
        raise ConfigError("Config document must be a mapping at the top level")
    try:
        return AppConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Config validation failed: {exc}") from exc


def load_config(path: str | Path | None = None) -> AppConfig:
    """Read *path* (default: ``$SPIKESYNC_CONFIG`` or ``config.yaml``).

    Raises
    ------
    ConfigError
        If the file is missing, is not valid YAML, or fails validation.
    """
    config_path = Path(path or os.getenv("SPIKESYNC_CONFIG") or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        raise ConfigError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.example.yaml → config.yaml and edit it."
        )

    try:
        with open(config_path, encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

    return parse_config(raw)


def rule_options_from_config(config: AppConfig) -> RuleEngineOptions:
    """Project the parts of *config* the rule engine reads."""
    from spikesync.engine.rules import RuleEngineOptions

    return RuleEngineOptions(
        active_profile_id=config.active_profile,
        profiles=dict(config.profiles),
        events=dict(config.events),
    )


# ---------------------------------------------------------------------------
# ConfigService — current snapshot + change subscriptions
# ---------------------------------------------------------------------------
class ConfigService:
    """Owns the current :class:`AppConfig` and notifies listeners on change.

    Thread-safe.  Snapshots are replaced wholesale, never edited in place.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path or os.getenv("SPIKESYNC_CONFIG") or DEFAULT_CONFIG_PATH)
        self._lock = threading.Lock()
        self._current: AppConfig | None = None
        self._listeners: list[ConfigListener] = []

    def load(self) -> AppConfig:
        """Read and validate the file, making it the current snapshot."""
        config = load_config(self.path)
        with self._lock:
            self._current = config
        logger.info(
            "Config loaded from %s: %d events, %d profiles (active: %s)",
            self.path,
            len(config.events),
            len(config.profiles),
            config.active_profile,
        )
        return config

    def get(self) -> AppConfig:
        with self._lock:
            current = self._current
        if current is None:
            raise ConfigError("Config has not been loaded yet")
        return current

    def reload(self) -> AppConfig:
        """Re-read the file and broadcast it.

        A file that fails validation leaves the previous snapshot in place
        and the error propagates to the caller.
        """
        config = self.load()
        self._broadcast(config)
        return config

    def save(self, config: AppConfig) -> None:
        """Validate, persist and broadcast *config*."""
        document = config.model_dump(mode="json", exclude_unset=True)
        validated = parse_config(document)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as fh:
            yaml.safe_dump(document, fh, sort_keys=False)

        with self._lock:
            self._current = validated
        logger.info("Config saved to %s", self.path)
        self._broadcast(validated)

    def on_change(self, listener: ConfigListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it.

        The listener is invoked immediately with the current snapshot when
        one has been loaded.
        """
        with self._lock:
            self._listeners.append(listener)
            current = self._current
        if current is not None:
            listener(current)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _broadcast(self, config: AppConfig) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(config)
            except Exception:
                logger.exception("Config listener %r failed", listener)
