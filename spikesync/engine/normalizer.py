"""
spikesync.engine.normalizer — Raw telemetry → NormalizedEvent
==============================================================

Pure mapping from host event names (and their JSON string payloads) to the
closed :class:`EventKey` vocabulary.  Malformed payloads never raise: they
are logged and the record is treated as unrecognized.

Mapping (first match wins)::

    match_start / round_start        → round_start
    match_end / match_outcome        → match_victory | match_defeat | match_draw
    kill                             → headshot | multikill{count} | death
    death                            → death
    bomb_planted / _defused / _exploded → spike_planted / _defused / _detonated
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from spikesync.engine.events import EventKey, NormalizedEvent, RawEvent, now_ms

logger = logging.getLogger(__name__)

__all__ = ["derive_events", "normalize"]

# Names that map straight to a key without looking at the payload
_DIRECT: dict[str, EventKey] = {
    "match_start": EventKey.ROUND_START,
    "round_start": EventKey.ROUND_START,
    "death": EventKey.DEATH,
    "bomb_planted": EventKey.SPIKE_PLANTED,
    "bomb_defused": EventKey.SPIKE_DEFUSED,
    "bomb_exploded": EventKey.SPIKE_DETONATED,
}

_MATCH_RESULTS: dict[str, EventKey] = {
    "victory": EventKey.MATCH_VICTORY,
    "defeat": EventKey.MATCH_DEFEAT,
}

_ROUND_OUTCOMES: dict[str, EventKey] = {
    "win": EventKey.ROUND_END_WIN,
    "loss": EventKey.ROUND_END_LOSS,
}


def _parse_payload(data: str) -> dict[str, Any]:
    payload = json.loads(data or "{}")
    # Valid JSON that is not an object carries no fields
    return payload if isinstance(payload, dict) else {}


def _normalize_kill(raw: RawEvent) -> NormalizedEvent:
    payload = _parse_payload(raw.data)
    if payload.get("headshot") == "1":
        return NormalizedEvent(EventKey.HEADSHOT, raw.timestamp)

    multi_kills = int(payload.get("multiKills") or 0)
    if multi_kills > 1:
        return NormalizedEvent(
            EventKey.MULTIKILL, raw.timestamp, payload={"count": multi_kills}
        )
    return NormalizedEvent(EventKey.DEATH, raw.timestamp)


def normalize(raw: RawEvent) -> NormalizedEvent | None:
    """Map one raw telemetry record to a :class:`NormalizedEvent`.

    Returns ``None`` for unknown event names and for payloads that cannot
    be parsed.  Never raises for malformed input.
    """
    try:
        direct = _DIRECT.get(raw.name)
        if direct is not None:
            return NormalizedEvent(direct, raw.timestamp)

        if raw.name in ("match_end", "match_outcome"):
            result = _parse_payload(raw.data).get("result")
            key = _MATCH_RESULTS.get(str(result), EventKey.MATCH_DRAW)
            return NormalizedEvent(key, raw.timestamp)

        if raw.name == "kill":
            return _normalize_kill(raw)
    except (ValueError, TypeError) as exc:
        # json.JSONDecodeError is a ValueError
        logger.warning(
            "Failed to normalize %r event (data=%r): %s", raw.name, raw.data, exc
        )
        return None

    logger.debug("Ignoring unrecognized telemetry event %r", raw.name)
    return None


def derive_events(
    info: Mapping[str, Any], now: float | None = None
) -> list[NormalizedEvent]:
    """Derive events from a periodic info snapshot.

    Round outcomes are not delivered as discrete events by the host feed;
    they show up as a ``round_outcome`` field on the info snapshot and are
    stamped with the local clock.
    """
    key = _ROUND_OUTCOMES.get(str(info.get("round_outcome")))
    if key is None:
        return []
    return [NormalizedEvent(key, now if now is not None else now_ms())]
