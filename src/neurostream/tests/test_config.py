"""Tests for environment-driven settings and logging setup."""

from __future__ import annotations

import logging

import pytest

from neurostream.config import ClientSettings, configure_logging


class TestClientSettings:
    def test_defaults(self) -> None:
        settings = ClientSettings(_env_file=None)
        assert settings.auto_select_device is True
        assert settings.timesync is False
        assert settings.action_timeout_ms == 1000

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NEUROSTREAM_DEVICE_ID", "crown-9")
        monkeypatch.setenv("NEUROSTREAM_TIMESYNC", "true")
        monkeypatch.setenv("NEUROSTREAM_ON_DEVICE_SOCKET_URL", "http://10.0.0.9:9000")
        settings = ClientSettings(_env_file=None)
        assert settings.device_id == "crown-9"
        assert settings.timesync is True
        assert settings.on_device_socket_url == "http://10.0.0.9:9000"


class TestConfigureLogging:
    def test_handler_added_once(self) -> None:
        settings = ClientSettings(_env_file=None, log_level="debug")
        logger = configure_logging(settings)
        configure_logging(settings)
        try:
            ours = [h for h in logger.handlers if getattr(h, "_neurostream", False)]
            assert len(ours) == 1
            assert logger.level == logging.DEBUG
        finally:
            for handler in ours:
                logger.removeHandler(handler)
