"""
spikesync.engine.events — EventKey, RawEvent and NormalizedEvent
=================================================================

The canonical event vocabulary.  Every telemetry record from the host
game feed is normalized into a :class:`NormalizedEvent` before the rule
engine sees it; the rule engine never looks at raw host event names.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any

__all__ = ["EventKey", "NormalizedEvent", "RawEvent", "now_ms"]


class EventKey(enum.StrEnum):
    """Closed set of semantic gameplay moments that can drive playback."""
    ROUND_START = "round_start"
    ROUND_END_WIN = "round_end_win"
    ROUND_END_LOSS = "round_end_loss"
    ACE = "ace"
    CLUTCH = "clutch_1vX"
    MULTIKILL = "multikill"
    HEADSHOT = "headshot"
    DEATH = "death"
    SPIKE_PLANTED = "spike_planted"
    SPIKE_DEFUSED = "spike_defused"
    SPIKE_DETONATED = "spike_detonated"
    MATCH_VICTORY = "match_victory"
    MATCH_DEFEAT = "match_defeat"
    MATCH_DRAW = "match_draw"


def now_ms() -> float:
    """Wall-clock time in milliseconds (the unit every gating window uses)."""
    return time.time() * 1000


# ---------------------------------------------------------------------------
# RawEvent — one discrete record as delivered by the host feed
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RawEvent:
    """A host telemetry record: event name, serialized JSON payload, timestamp."""

    name: str
    data: str = ""
    timestamp: float = 0


# ---------------------------------------------------------------------------
# NormalizedEvent — the sole input to the rule engine
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class NormalizedEvent:
    """Canonical event.  Created per telemetry record and consumed once."""

    key: EventKey
    timestamp: float
    payload: dict[str, Any] | None = field(default=None)
