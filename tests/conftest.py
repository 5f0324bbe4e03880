"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import copy

import pytest
import yaml

from spikesync.config import AppConfig, ConfigService, parse_config, rule_options_from_config
from spikesync.engine.rules import RuleEngineOptions

# ---------------------------------------------------------------------------
# A small but complete config document (snake_case keys)
# ---------------------------------------------------------------------------
BASE_DOCUMENT: dict = {
    "version": "1.0",
    "spotify": {"playback_mode": "remote_device"},
    "profiles": {
        "hype": {"name": "Hype", "volume_scale": 0.8},
        "chill": {
            "name": "Chill",
            "volume_scale": 0.4,
            "overrides": {
                "round_start": {"playlist_uris": ["C"], "interrupt_policy": "crossfade"},
                "headshot": {"enabled": False},
            },
        },
    },
    "active_profile": "hype",
    "events": {
        "round_start": {
            "enabled": True,
            "playlist_uris": ["A"],
            "cooldown_ms": 1000,
            "debounce_ms": 0,
            "interrupt_policy": "duck",
        },
        "headshot": {
            "enabled": True,
            "playlist_uris": ["H"],
            "cooldown_ms": 0,
            "debounce_ms": 0,
            "interrupt_policy": "never",
        },
        "ace": {
            "enabled": True,
            "playlist_uris": ["P-ACE"],
            "track_uris": ["T-ACE"],
            "stinger_uri": "S-ACE",
            "cooldown_ms": 0,
            "debounce_ms": 0,
            "interrupt_policy": "immediate",
        },
        "multikill": {
            "enabled": True,
            "playlist_uris": ["M"],
            "cooldown_ms": 0,
            "debounce_ms": 0,
            "interrupt_policy": "immediate",
            "multikill_window_ms": 5000,
        },
        "death": {
            "enabled": False,
            "playlist_uris": ["D"],
            "cooldown_ms": 0,
            "debounce_ms": 0,
            "interrupt_policy": "never",
        },
    },
    "developer": {"mock_mode": True},
}


@pytest.fixture
def config_document() -> dict:
    """A fresh, mutable copy of the base config document."""
    return copy.deepcopy(BASE_DOCUMENT)


@pytest.fixture
def app_config(config_document) -> AppConfig:
    return parse_config(config_document)


@pytest.fixture
def options(app_config) -> RuleEngineOptions:
    return rule_options_from_config(app_config)


@pytest.fixture
def config_file(tmp_path, config_document):
    """Write the base document to ``config.yaml`` under tmp_path."""
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config_document), encoding="utf-8")
    return path


@pytest.fixture
def config_service(config_file) -> ConfigService:
    service = ConfigService(config_file)
    service.load()
    return service
