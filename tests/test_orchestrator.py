"""
tests/test_orchestrator.py — Orchestrator Wiring Tests
=======================================================
Runs the real ConfigService, TelemetryFeed and RuleEngine with either
the in-memory MockPlaybackClient or an AsyncMock client.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
import yaml

from spikesync.engine.events import EventKey, NormalizedEvent, RawEvent, now_ms
from spikesync.engine.rules import ActionType
from spikesync.services.orchestrator import Orchestrator
from spikesync.services.playback import MockPlaybackClient, PlaybackError
from spikesync.services.telemetry import TelemetryFeed


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.get_event_loop_policy().new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _event(key: EventKey) -> NormalizedEvent:
    return NormalizedEvent(key, now_ms())


def _orchestrator(config_service, client) -> tuple[Orchestrator, TelemetryFeed]:
    feed = TelemetryFeed(mock_mode=True)
    orch = Orchestrator(config_service, feed, client_factory=lambda cfg, creds: client)
    return orch, feed


class TestLifecycle:
    def test_start_prepares_device_and_volume(self, config_service):
        client = AsyncMock()
        orch, feed = _orchestrator(config_service, client)

        async def _inner():
            await orch.start()
            assert feed.started
            client.ensure_device.assert_awaited_once()
            client.set_volume.assert_awaited_once_with(0.8)
            await orch.stop()
            client.aclose.assert_awaited_once()
            assert not feed.started

        run_async(_inner())

    def test_start_without_device(self, config_service):
        client = AsyncMock()
        orch, _ = _orchestrator(config_service, client)

        async def _inner():
            await orch.start(prepare_device=False)
            client.ensure_device.assert_not_awaited()
            await orch.prepare_device()
            client.ensure_device.assert_awaited_once()
            await orch.stop()

        run_async(_inner())

    def test_loads_config_when_not_loaded(self, config_file):
        from spikesync.config import ConfigService

        orch, _ = _orchestrator(ConfigService(config_file), MockPlaybackClient())

        async def _inner():
            await orch.start()
            assert orch.config.active_profile == "hype"
            await orch.stop()

        run_async(_inner())

    def test_device_failure_propagates(self, config_service):
        client = AsyncMock()
        client.ensure_device.side_effect = PlaybackError("no devices")
        orch, feed = _orchestrator(config_service, client)
        with pytest.raises(PlaybackError):
            run_async(orch.start())
        assert not feed.started

    def test_process_before_start(self, config_service):
        orch, _ = _orchestrator(config_service, MockPlaybackClient())
        with pytest.raises(RuntimeError):
            orch.process_event(_event(EventKey.ROUND_START))

    def test_stop_unsubscribes(self, config_service):
        client = MockPlaybackClient()
        orch, feed = _orchestrator(config_service, client)

        async def _inner():
            await orch.start()
            await orch.stop()
            feed.start()
            feed.ingest_events([RawEvent("round_start")])
            await asyncio.sleep(0.01)

        run_async(_inner())
        assert client.playback_history() == []


class TestEventFlow:
    def test_raw_event_reaches_client(self, config_service):
        client = MockPlaybackClient()
        orch, feed = _orchestrator(config_service, client)

        async def _inner():
            await orch.start()
            feed.ingest_events([RawEvent("round_start", "", 0)])
            await orch.stop()

        run_async(_inner())
        (action,) = client.playback_history()
        assert action.uri == "A"
        assert action.context.profile == "Hype"

    def test_stinger_before_play(self, config_service):
        client = AsyncMock()
        orch, feed = _orchestrator(config_service, client)

        async def _inner():
            await orch.start()
            feed.push_mock_event(_event(EventKey.ACE))
            await orch.stop()

        run_async(_inner())
        names = [c[0] for c in client.mock_calls if c[0] in ("queue_stinger", "play")]
        assert names == ["queue_stinger", "play"]
        client.queue_stinger.assert_awaited_once_with("S-ACE")
        action = client.play.await_args.args[0]
        assert action.type == ActionType.PLAY_TRACK

    def test_newer_action_never_splits_stinger_and_play(self, config_service):
        log: list[str] = []

        class _SlowStingerClient(MockPlaybackClient):
            async def queue_stinger(self, uri: str) -> None:
                await asyncio.sleep(0.01)
                log.append(f"stinger {uri}")

            async def play(self, action) -> None:
                log.append(f"play {action.uri}")

        orch, feed = _orchestrator(config_service, _SlowStingerClient())

        async def _inner():
            await orch.start()
            feed.push_mock_event(_event(EventKey.ACE))
            feed.push_mock_event(_event(EventKey.ROUND_START))
            await orch.stop()

        run_async(_inner())
        assert log == ["stinger S-ACE", "play T-ACE", "play A"]

    def test_event_from_another_thread(self, config_service):
        client = MockPlaybackClient()
        orch, _ = _orchestrator(config_service, client)

        async def _inner():
            await orch.start()
            await asyncio.to_thread(orch._on_event, _event(EventKey.HEADSHOT))
            await asyncio.sleep(0.01)
            await orch.stop()

        run_async(_inner())
        assert [a.uri for a in client.playback_history()] == ["H"]

    def test_dispatch_failure_is_logged_and_pipeline_continues(self, config_service, caplog):
        client = AsyncMock()
        client.play.side_effect = [PlaybackError("boom"), None]
        orch, feed = _orchestrator(config_service, client)

        async def _inner():
            await orch.start()
            with caplog.at_level("ERROR", logger="spikesync.services.orchestrator"):
                feed.push_mock_event(_event(EventKey.HEADSHOT))
                await asyncio.sleep(0.01)
            feed.push_mock_event(_event(EventKey.HEADSHOT))
            await orch.stop()

        run_async(_inner())
        assert "Dispatch failed" in caplog.text
        assert client.play.await_count == 2


class TestGating:
    def test_disabled_event(self, config_service):
        orch, _ = _orchestrator(config_service, MockPlaybackClient())

        async def _inner():
            await orch.start()
            result = orch.process_event(_event(EventKey.DEATH))
            await orch.stop()
            return result

        assert run_async(_inner()) is None

    def test_strict_mode_allow_list(self, config_service, monkeypatch):
        monkeypatch.setattr(
            "spikesync.services.orchestrator.APPROVED_EVENTS", frozenset({EventKey.ROUND_START})
        )
        orch, _ = _orchestrator(config_service, MockPlaybackClient())

        async def _inner():
            await orch.start()
            blocked = orch.process_event(_event(EventKey.HEADSHOT))
            allowed = orch.process_event(_event(EventKey.ROUND_START))
            await orch.stop()
            return blocked, allowed

        blocked, allowed = run_async(_inner())
        assert blocked is None
        assert allowed is not None

    def test_strict_mode_off(self, config_file, config_document, monkeypatch):
        from spikesync.config import ConfigService

        monkeypatch.setattr("spikesync.services.orchestrator.APPROVED_EVENTS", frozenset())
        config_document["compliance"] = {"strict_mode": False}
        config_file.write_text(yaml.safe_dump(config_document), encoding="utf-8")
        orch, _ = _orchestrator(ConfigService(config_file), MockPlaybackClient())

        async def _inner():
            await orch.start()
            result = orch.process_event(_event(EventKey.HEADSHOT))
            await orch.stop()
            return result

        assert run_async(_inner()) is not None

    def test_missing_config_escalates(self, config_service, caplog):
        orch, feed = _orchestrator(config_service, MockPlaybackClient())

        async def _inner():
            await orch.start()
            with caplog.at_level("ERROR", logger="spikesync.services.orchestrator"):
                for _ in range(3):
                    feed.push_mock_event(_event(EventKey.SPIKE_PLANTED))
            await orch.stop()

        run_async(_inner())
        levels = [r.levelname for r in caplog.records if r.name == "spikesync.services.orchestrator"]
        assert levels.count("ERROR") == 2
        assert levels.count("CRITICAL") == 1


class TestConfigChanges:
    def test_reload_swaps_engine_options(self, config_service, config_file, config_document):
        client = MockPlaybackClient()
        orch, feed = _orchestrator(config_service, client)

        async def _inner():
            await orch.start()
            engine = orch.engine
            config_document["active_profile"] = "chill"
            config_file.write_text(yaml.safe_dump(config_document), encoding="utf-8")
            config_service.reload()

            assert orch.engine is engine
            assert orch.engine.options.active_profile_id == "chill"
            assert orch.config.active_profile == "chill"
            feed.push_mock_event(_event(EventKey.ROUND_START))
            await orch.stop()

        run_async(_inner())
        (action,) = client.playback_history()
        assert action.uri == "C"
        assert action.context.profile == "Chill"
