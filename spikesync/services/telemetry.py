"""
spikesync.services.telemetry — Telemetry feed subscription channel
====================================================================

The host game feed delivers discrete raw events and periodic info
snapshots (in production they arrive through ``/api/telemetry/*``).
:class:`TelemetryFeed` normalizes them and hands the resulting
:class:`NormalizedEvent` objects to its subscribers, in arrival order.

The feed also carries per-feature health snapshots so the API can report
whether the host is actually delivering the features we asked for.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from spikesync.engine.events import NormalizedEvent, RawEvent, now_ms
from spikesync.engine.normalizer import derive_events, normalize

logger = logging.getLogger(__name__)

EventListener = Callable[[NormalizedEvent], None]
HealthListener = Callable[[list["FeatureHealth"]], None]

# Features the host feed must provide for every EventKey to be reachable
REQUIRED_FEATURES: tuple[str, ...] = (
    "match_info",
    "kill",
    "death",
    "assists",
    "round_start",
    "round_end",
    "match_state",
    "bomb",
)


class HealthStatus(enum.StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class FeatureHealth:
    feature: str
    status: HealthStatus
    last_updated: float = field(default_factory=now_ms)


class TelemetryFeed:
    """Normalizing fan-out from the host feed to subscribers.

    Thread-safe.  A listener that raises is logged and does not prevent
    delivery to the remaining listeners.
    """

    def __init__(self, *, mock_mode: bool = False) -> None:
        self.mock_mode = mock_mode
        self._lock = threading.Lock()
        self._started = False
        self._listeners: list[EventListener] = []
        self._health_listeners: list[HealthListener] = []
        self._health: list[FeatureHealth] = []

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self.mock_mode:
            logger.info("Telemetry feed started in mock mode")
        else:
            logger.info(
                "Telemetry feed started; expecting features: %s",
                ", ".join(REQUIRED_FEATURES),
            )

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        logger.info("Telemetry feed stopped")

    # -------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------
    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Deliver every normalized event to *listener*; returns an unsubscriber."""
        with self._lock:
            self._listeners.append(listener)
        return lambda: self._remove(self._listeners, listener)

    def subscribe_health(self, listener: HealthListener) -> Callable[[], None]:
        with self._lock:
            self._health_listeners.append(listener)
        return lambda: self._remove(self._health_listeners, listener)

    def _remove(self, listeners: list[Any], listener: Any) -> None:
        with self._lock:
            if listener in listeners:
                listeners.remove(listener)

    # -------------------------------------------------------------------
    # Ingest
    # -------------------------------------------------------------------
    def ingest_events(self, raw_events: Iterable[RawEvent]) -> int:
        """Normalize and deliver discrete host events.

        Returns the number of events delivered.  A stopped feed drops input.
        """
        if not self._started:
            logger.debug("Feed stopped; dropping raw events")
            return 0
        delivered = 0
        for raw in raw_events:
            event = normalize(raw)
            if event is not None:
                self._emit(event)
                delivered += 1
        return delivered

    def ingest_info(self, info: Mapping[str, Any]) -> int:
        """Derive events from an info snapshot and deliver them."""
        if not self._started:
            logger.debug("Feed stopped; dropping info update")
            return 0
        derived = derive_events(info)
        for event in derived:
            self._emit(event)
        return len(derived)

    def push_mock_event(self, event: NormalizedEvent) -> None:
        """Inject an already-normalized event (mock mode only)."""
        if not self.mock_mode:
            raise RuntimeError("Mock events are only allowed in mock mode")
        self._emit(event)

    def _emit(self, event: NormalizedEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Telemetry listener failed on %s", event.key)

    # -------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------
    def update_health(self, snapshots: list[FeatureHealth]) -> None:
        with self._lock:
            self._health = list(snapshots)
            listeners = list(self._health_listeners)
        degraded = [s.feature for s in snapshots if s.status != HealthStatus.HEALTHY]
        if degraded:
            logger.warning("Telemetry features not healthy: %s", ", ".join(degraded))
        for listener in listeners:
            try:
                listener(list(snapshots))
            except Exception:
                logger.exception("Health listener failed")

    def health(self) -> list[FeatureHealth]:
        with self._lock:
            return list(self._health)
