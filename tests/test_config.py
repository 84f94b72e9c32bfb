"""
Configuration Tests
===================

Tests for YAML + environment configuration loading.
"""

import pytest
from pydantic import ValidationError

from streamwatch_agent.config import Settings, load_config


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PORT", raising=False)
        settings = load_config(str(tmp_path / "missing.yaml"))

        assert settings.capture.frame_interval_ms == 5000
        assert settings.capture.reconnect_attempts == 5
        assert settings.pipeline.default_cooldown_seconds == 30
        assert settings.orchestrator.poll_interval_seconds == 60
        assert settings.inference.backend == "yolo"
        assert not settings.liveness.enabled

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "capture:\n"
            "  frame_interval_ms: 2000\n"
            "  allowed_hosts: ['.example.com']\n"
            "inference:\n"
            "  backend: Mock\n"
            "store:\n"
            "  backend: memory\n"
        )
        settings = load_config(str(path))

        assert settings.capture.frame_interval_ms == 2000
        assert settings.capture.allowed_hosts == [".example.com"]
        assert settings.inference.backend == "mock"
        assert settings.store.backend == "memory"

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("capture:\n  reconnect_attempts: 2\n")
        monkeypatch.setenv("STREAMWATCH_RECONNECT_ATTEMPTS", "9")
        monkeypatch.setenv("STREAMWATCH_TWITCH_CLIENT_ID", "id")
        monkeypatch.setenv("STREAMWATCH_TWITCH_CLIENT_SECRET", "secret")
        monkeypatch.setenv("STREAMWATCH_POLL_INTERVAL", "15")
        monkeypatch.setenv("PORT", "9000")

        settings = load_config(str(path))

        assert settings.capture.reconnect_attempts == 9
        assert settings.liveness.enabled
        assert settings.orchestrator.poll_interval_seconds == 15.0
        assert settings.server.port == 9000

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            Settings.model_validate({"inference": {"backend": "tensorflow"}})

    def test_interval_floor(self):
        with pytest.raises(ValidationError):
            Settings.model_validate({"capture": {"frame_interval_ms": 10}})


class TestSettings:
    """Tests for derived settings."""

    def test_capture_options(self):
        settings = Settings.model_validate({"capture": {"reconnect_attempts": 3}})
        options = settings.capture_options()

        assert options["reconnect_attempts"] == 3
        assert options["ffmpeg_path"] == "ffmpeg"
        assert "frame_interval_ms" not in options
        assert isinstance(options["allowed_hosts"], tuple)
