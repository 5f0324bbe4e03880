"""
spikesync.__main__ — Entry point for ``python -m spikesync``
=============================================================

Wiring:
1. Load .env (Spotify secrets and tokens).
2. Load config.yaml and apply its logging level.
3. Build the FastAPI app (the lifespan starts feed + orchestrator).
4. Serve it with Uvicorn (blocking).

Run with::

    python -m spikesync
"""

from __future__ import annotations

import logging
import os
import sys

import uvicorn
from dotenv import load_dotenv

from spikesync.config import ConfigError, load_config

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("spikesync")

LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def main() -> None:
    """Bootstrap and serve SpikeSync."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Configuration.  Fail fast here rather than inside the lifespan.
    config_path = os.getenv("SPIKESYNC_CONFIG") or None
    try:
        cfg = load_config(config_path)
    except ConfigError as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    logger.setLevel(LOG_LEVELS[cfg.developer.logging_level])
    logger.info("Config loaded — active profile: %s", cfg.active_profile)

    # 3. App.
    from spikesync.api.main import create_app

    app = create_app(config_path)

    # 4. Serve (blocks until Ctrl+C or SIGTERM).
    host = os.getenv("SPIKESYNC_HOST", "127.0.0.1")
    port = int(os.getenv("SPIKESYNC_PORT", "42813"))
    logger.info("Starting SpikeSync on http://%s:%d …", host, port)
    try:
        uvicorn.run(app, host=host, port=port, log_config=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
