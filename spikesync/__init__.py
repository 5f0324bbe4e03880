"""
SpikeSync — Gameplay-reactive music for Spotify
================================================
Listens to a live stream of match telemetry, decides in real time whether
the moment deserves a soundtrack change, and drives Spotify playback
through a rate-limit-aware dispatch queue.

Package layout::

    spikesync/
    ├── __main__.py        # `python -m spikesync` runner (uvicorn)
    ├── config.py          # YAML → validated AppConfig + ConfigService
    ├── constants.py       # Approved events, Spotify URLs, defaults
    ├── engine/
    │   ├── events.py      # EventKey, RawEvent, NormalizedEvent
    │   ├── normalizer.py  # Raw telemetry → NormalizedEvent
    │   └── rules.py       # Gating rule engine → PlaybackAction
    ├── services/
    │   ├── dispatch_queue.py  # Serialized, throttle-surviving task queue
    │   ├── playback.py        # Spotify Connect / Web Playback / mock clients
    │   ├── telemetry.py       # Telemetry feed subscription channel
    │   ├── orchestrator.py    # Wires feed → engine → queue → client
    │   └── auth_service.py    # Spotify PKCE OAuth helpers
    └── api/
        ├── main.py        # FastAPI app (telemetry ingest, auth, health)
        ├── deps.py        # app.state dependency providers
        └── routes/        # Telemetry, playback, config and auth endpoints
"""

__version__ = "0.1.0"
