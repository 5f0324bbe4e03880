"""
spikesync.engine.rules — Gating Rule Engine
============================================

Decides whether a :class:`NormalizedEvent` should change playback.
No network I/O inside the engine; the only side effect of
:meth:`RuleEngine.evaluate` is advancing the gating state of the key it
evaluated.

Pipeline stages (short-circuit to ``None`` on the first failing gate)::

    NormalizedEvent → Resolve config (base ⊕ profile override)
                    → Enabled → Debounce → Multikill streak → Cooldown
                    → Select URI → PlaybackAction

Debounce and cooldown are independent clocks.  Debounce gates raw-signal
chatter and advances even when a later gate drops the event; cooldown only
advances when an action is actually produced.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field

from spikesync.config import EventConfig, InterruptPolicy, ProfileConfig
from spikesync.engine.events import EventKey, NormalizedEvent, now_ms

logger = logging.getLogger(__name__)

__all__ = [
    "ActionContext",
    "ActionType",
    "MissingConfigurationError",
    "PlaybackAction",
    "RuleEngine",
    "RuleEngineOptions",
]

MULTIKILL_THRESHOLD = 2


class MissingConfigurationError(LookupError):
    """The active profile or the base config for an event key is absent."""

    def __init__(self, message: str, *, key: EventKey | None = None) -> None:
        super().__init__(message)
        self.key = key


class ActionType(enum.StrEnum):
    PLAY_PLAYLIST = "PLAY_PLAYLIST"
    PLAY_TRACK = "PLAY_TRACK"


# ---------------------------------------------------------------------------
# Engine input / output
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RuleEngineOptions:
    """Configuration snapshot.  Replaced wholesale, never edited in place."""

    active_profile_id: str
    profiles: dict[str, ProfileConfig] = field(default_factory=dict)
    events: dict[EventKey, EventConfig] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ActionContext:
    event: EventKey
    profile: str
    timestamp: float


@dataclass(frozen=True, slots=True)
class PlaybackAction:
    """A logical playback intent for the playback client to realize."""

    type: ActionType
    uri: str
    interrupt_policy: InterruptPolicy
    context: ActionContext
    stinger_uri: str | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "uri": self.uri,
            "interrupt_policy": self.interrupt_policy.value,
            "stinger_uri": self.stinger_uri,
            "context": {
                "event": self.context.event.value,
                "profile": self.context.profile,
                "timestamp": self.context.timestamp,
            },
        }


@dataclass(slots=True)
class _StreakBucket:
    count: int = 0
    expires_at: float = 0


# ---------------------------------------------------------------------------
# RuleEngine
# ---------------------------------------------------------------------------
class RuleEngine:
    """Per-process gating state plus a swappable config snapshot.

    Thread-safe: evaluations are serialized on an internal lock, and
    :meth:`update_options` is a single reference swap that a running
    evaluation never observes half-way.

    Usage::

        engine = RuleEngine(rule_options_from_config(cfg))
        action = engine.evaluate(event)
        engine.update_options(rule_options_from_config(new_cfg))
    """

    def __init__(self, options: RuleEngineOptions) -> None:
        self._options = options
        self._lock = threading.Lock()
        # EventKey → last time the key passed debounce
        self._last_seen: dict[EventKey, float] = {}
        # EventKey → last time the key produced an action
        self._last_fired: dict[EventKey, float] = {}
        # EventKey → running multikill streak
        self._streaks: dict[EventKey, _StreakBucket] = {}

    @property
    def options(self) -> RuleEngineOptions:
        return self._options

    def update_options(self, options: RuleEngineOptions) -> None:
        """Swap the configuration snapshot.  Gating state is kept."""
        self._options = options
        logger.info(
            "Rule engine options replaced (active profile: %s, %d events)",
            options.active_profile_id,
            len(options.events),
        )

    # -------------------------------------------------------------------
    # Config resolution
    # -------------------------------------------------------------------
    def resolve_event_config(
        self, key: EventKey, options: RuleEngineOptions | None = None
    ) -> EventConfig:
        """Base config for *key* merged with the active profile's override.

        Raises
        ------
        MissingConfigurationError
            If the active profile or the base config for *key* is absent.
        """
        opts = options or self._options
        profile = opts.profiles.get(opts.active_profile_id)
        if profile is None:
            raise MissingConfigurationError(
                f"Active profile '{opts.active_profile_id}' missing", key=key
            )
        base = opts.events.get(key)
        if base is None:
            raise MissingConfigurationError(
                f"No event config for '{key}'", key=key
            )

        override = profile.overrides.get(key)
        if override is None:
            return base
        return override.apply_to(base)

    # -------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------
    def evaluate(
        self, event: NormalizedEvent, now: float | None = None
    ) -> PlaybackAction | None:
        """Run the gating pipeline for one event.

        Parameters
        ----------
        event : NormalizedEvent
        now : evaluation instant in milliseconds (defaults to the wall clock)
        """
        if now is None:
            now = now_ms()

        # One snapshot for the whole evaluation
        options = self._options
        key = event.key

        with self._lock:
            config = self.resolve_event_config(key, options)

            if not config.enabled:
                logger.debug("Skipping %s: disabled", key)
                return None

            if not self._pass_debounce(key, config.debounce_ms, now):
                logger.debug("Skipping %s: debounced", key)
                return None

            if key == EventKey.MULTIKILL and config.multikill_window_ms:
                if not self._track_streak(event, config.multikill_window_ms, now):
                    logger.debug("Skipping %s: streak below threshold", key)
                    return None

            if not self._pass_cooldown(key, config.cooldown_ms, now):
                logger.debug("Skipping %s: cooling down", key)
                return None

        if config.track_uris:
            action_type, uri = ActionType.PLAY_TRACK, config.track_uris[0]
        elif config.playlist_uris:
            action_type, uri = ActionType.PLAY_PLAYLIST, config.playlist_uris[0]
        else:
            return None

        profile = options.profiles[options.active_profile_id]
        action = PlaybackAction(
            type=action_type,
            uri=uri,
            interrupt_policy=config.interrupt_policy,
            stinger_uri=config.stinger_uri,
            context=ActionContext(event=key, profile=profile.name, timestamp=now),
        )
        logger.info(
            "Event %s → %s %s (%s, profile %s)",
            key, action.type, action.uri, action.interrupt_policy, profile.name,
        )
        return action

    # -------------------------------------------------------------------
    # Gates (caller holds the lock)
    # -------------------------------------------------------------------
    def _pass_debounce(self, key: EventKey, debounce_ms: int, now: float) -> bool:
        last = self._last_seen.get(key)
        if last is not None and now - last < debounce_ms:
            return False
        self._last_seen[key] = now
        return True

    def _pass_cooldown(self, key: EventKey, cooldown_ms: int, now: float) -> bool:
        last = self._last_fired.get(key)
        if last is not None and now - last < cooldown_ms:
            return False
        self._last_fired[key] = now
        return True

    def _track_streak(
        self, event: NormalizedEvent, window_ms: int, now: float
    ) -> bool:
        """Accumulate multikill hits inside a rolling window."""
        bucket = self._streaks.setdefault(event.key, _StreakBucket())
        if now > bucket.expires_at:
            bucket.count = 0

        payload = event.payload or {}
        bucket.count += int(payload.get("count", 1))
        bucket.expires_at = now + window_ms
        return bucket.count >= MULTIKILL_THRESHOLD
