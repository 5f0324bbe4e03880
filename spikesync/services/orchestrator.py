"""
spikesync.services.orchestrator — Feed → Engine → Queue → Client wiring
=========================================================================

The orchestrator owns one :class:`RuleEngine` and one playback client.

Lifecycle:
1. ``start()`` loads config, builds the engine and client, claims a device,
   applies the active profile's volume, starts the telemetry feed and
   subscribes to it and to config changes.
2. Each normalized event is gated (enabled, strict-mode allow-list), then
   evaluated.  A resulting action is dispatched in the background: stinger
   first (if any), then the main play call.
3. ``stop()`` unsubscribes, waits for in-flight dispatches and closes the
   client.

Dispatch failures are logged and never stop the pipeline.  Rate limits
never reach this layer; the client's queue absorbs them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from spikesync.config import (
    AppConfig,
    ConfigError,
    ConfigService,
    rule_options_from_config,
)
from spikesync.constants import APPROVED_EVENTS, MISSING_CONFIG_ALERT_THRESHOLD
from spikesync.engine.events import EventKey, NormalizedEvent
from spikesync.engine.rules import MissingConfigurationError, PlaybackAction, RuleEngine
from spikesync.services.playback import (
    PlaybackClient,
    SpotifyCredentials,
    create_playback_client,
)

if TYPE_CHECKING:
    from spikesync.services.telemetry import TelemetryFeed

logger = logging.getLogger(__name__)

ClientFactory = Callable[[AppConfig, SpotifyCredentials | None], PlaybackClient]


class Orchestrator:
    """Couples the telemetry feed, rule engine and playback client.

    Parameters
    ----------
    config_service:
        Source of the initial config and of change notifications.
    feed:
        The telemetry feed to subscribe to.
    client_factory:
        Builds the playback client from config (tests inject a mock).
    credentials:
        Spotify credentials; read from the environment when omitted.
    """

    def __init__(
        self,
        config_service: ConfigService,
        feed: TelemetryFeed,
        *,
        client_factory: ClientFactory = create_playback_client,
        credentials: SpotifyCredentials | None = None,
    ) -> None:
        self.config_service = config_service
        self.feed = feed
        self._client_factory = client_factory
        self._credentials = credentials

        self.config: AppConfig | None = None
        self.engine: RuleEngine | None = None
        self.client: PlaybackClient | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe_feed: Callable[[], None] | None = None
        self._unsubscribe_config: Callable[[], None] | None = None
        self._dispatches: set[asyncio.Future] = set()
        # Held for a whole stinger + play pair; waiters acquire in FIFO order
        self._dispatch_lock = asyncio.Lock()
        # EventKey → consecutive MissingConfigurationError count
        self._missing_config: dict[EventKey, int] = {}

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    async def start(self, *, prepare_device: bool = True) -> None:
        """Build engine and client, then begin consuming telemetry.

        With ``prepare_device=False`` the caller runs :meth:`prepare_device`
        itself (the API does so in the background, because the Web Playback
        device can only register once the API is serving).
        """
        self._loop = asyncio.get_running_loop()

        try:
            config = self.config_service.get()
        except ConfigError:
            config = self.config_service.load()
        self.config = config
        self.engine = RuleEngine(rule_options_from_config(config))

        self.client = self._client_factory(config, self._credentials)
        if prepare_device:
            await self.prepare_device()

        self.feed.start()
        self._unsubscribe_feed = self.feed.subscribe(self._on_event)
        self._unsubscribe_config = self.config_service.on_change(self._on_config_change)
        logger.info(
            "Orchestrator started (profile: %s, strict mode: %s)",
            config.active_profile,
            config.compliance.strict_mode,
        )

    async def prepare_device(self) -> None:
        """Claim a playback device and apply the active profile's volume."""
        if self.client is None or self.config is None:
            raise RuntimeError("Orchestrator has not been started")
        await self.client.ensure_device()
        profile = self.config.profiles.get(self.config.active_profile)
        if profile is not None:
            await self.client.set_volume(profile.volume_scale)

    async def stop(self) -> None:
        if self._unsubscribe_config is not None:
            self._unsubscribe_config()
            self._unsubscribe_config = None
        if self._unsubscribe_feed is not None:
            self._unsubscribe_feed()
            self._unsubscribe_feed = None
        self.feed.stop()

        if self._dispatches:
            await asyncio.gather(*self._dispatches, return_exceptions=True)
        if self.client is not None:
            await self.client.aclose()
        logger.info("Orchestrator stopped")

    # -------------------------------------------------------------------
    # Event handling
    # -------------------------------------------------------------------
    def process_event(self, event: NormalizedEvent) -> PlaybackAction | None:
        """Gate and evaluate one event.  Returns the action to dispatch, if any.

        Raises
        ------
        MissingConfigurationError
            If the event's config or the active profile is absent.
        """
        if self.engine is None or self.config is None:
            raise RuntimeError("Orchestrator has not been started")

        config = self.config
        if not self.engine.resolve_event_config(event.key).enabled:
            return None

        if config.compliance.strict_mode and event.key not in APPROVED_EVENTS:
            logger.debug("Strict mode: %s is not an approved event", event.key)
            return None

        return self.engine.evaluate(event)

    async def dispatch(self, action: PlaybackAction) -> None:
        """Send one action to the playback client (stinger, then play).

        Actions are sent one after another in scheduling order, so a newer
        action never lands between an older action's stinger and its play.
        """
        if self.client is None:
            raise RuntimeError("Orchestrator has not been started")
        async with self._dispatch_lock:
            if action.stinger_uri:
                await self.client.queue_stinger(action.stinger_uri)
            await self.client.play(action)

    def _on_event(self, event: NormalizedEvent) -> None:
        try:
            action = self.process_event(event)
        except MissingConfigurationError as exc:
            self._report_missing_config(event.key, exc)
            return
        self._missing_config.pop(event.key, None)

        if action is not None:
            self._schedule(action)

    def _report_missing_config(self, key: EventKey, exc: MissingConfigurationError) -> None:
        count = self._missing_config.get(key, 0) + 1
        self._missing_config[key] = count
        if count >= MISSING_CONFIG_ALERT_THRESHOLD:
            logger.critical(
                "Configuration integrity problem: %s failed %d times in a row (%s)",
                key, count, exc,
            )
        else:
            logger.error("Missing configuration for %s: %s", key, exc)

    def _schedule(self, action: PlaybackAction) -> None:
        """Run :meth:`dispatch` on the orchestrator's loop from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("No event loop available; dropping action for %s", action.context.event)
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not loop:
            loop.call_soon_threadsafe(self._schedule, action)
            return

        future = loop.create_task(self.dispatch(action))
        self._dispatches.add(future)
        future.add_done_callback(self._dispatch_done(action))

    def _dispatch_done(self, action: PlaybackAction) -> Callable[[asyncio.Future], None]:
        def _callback(future: asyncio.Future) -> None:
            self._dispatches.discard(future)
            if future.cancelled():
                return
            exc = future.exception()
            if exc is not None:
                logger.error(
                    "Dispatch failed for %s (%s): %s",
                    action.context.event, action.uri, exc,
                    exc_info=exc,
                )

        return _callback

    # -------------------------------------------------------------------
    # Config changes
    # -------------------------------------------------------------------
    def _on_config_change(self, config: AppConfig) -> None:
        self.config = config
        if self.engine is not None:
            self.engine.update_options(rule_options_from_config(config))
