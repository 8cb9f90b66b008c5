"""Client configuration loaded from environment variables."""

from __future__ import annotations

import logging
import sys
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """All options can be set as ``NEUROSTREAM_<NAME>`` env vars (or .env file)."""

    # --- Device selection ---
    device_id: str | None = None
    auto_select_device: bool = True

    # --- Clock sync ---
    timesync: bool = False
    timesync_interval_s: float = 60.0
    timesync_window: int = 10
    timesync_probe_timeout_s: float = 5.0

    # --- Local mode ---
    on_device_socket_url: str | None = None  # overrides the device-advertised URL

    # --- Actions ---
    action_timeout_ms: int = 1000

    # --- OAuth ---
    oauth_base_url: str = "https://api.neurostream.dev/oauth"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="NEUROSTREAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> ClientSettings:
    return ClientSettings()


def configure_logging(settings: ClientSettings | None = None) -> logging.Logger:
    """Attach a stdout handler to the ``neurostream`` logger.

    Libraries should not configure logging on import; applications call this
    once at startup if they want the SDK's log lines.
    """
    s = settings or get_settings()
    logger = logging.getLogger("neurostream")
    logger.setLevel(s.log_level.upper())
    if not any(getattr(h, "_neurostream", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-8s %(name)s — %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        handler._neurostream = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
