"""
Configuration Tests
===================

Tests for loading, validating, saving and live-applying settings.
"""

import pytest
import yaml
from pydantic import ValidationError

from printstreamer.config import (
    ConfigurationError,
    Settings,
    apply_settings,
    check_required,
    config_help,
    ensure_required,
    load_config,
    save_config,
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "PORT",
        "PRINTSTREAMER_PORT",
        "PRINTSTREAMER_STREAM_SOURCE",
        "PRINTSTREAMER_MOONRAKER_URL",
        "PRINTSTREAMER_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestLoadConfig:
    """Tests for load_config()."""

    def test_yaml_values(self, tmp_path, clean_env):
        """Verify file values override defaults."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            "stream": {"source": "http://cam/stream", "target_fps": 15},
            "timelapse": {"last_layer_offset": 3},
        }))

        settings = load_config(str(path))

        assert settings.stream.source == "http://cam/stream"
        assert settings.stream.target_fps == 15
        assert settings.timelapse.last_layer_offset == 3
        assert settings.audio.folder == "audio"

    def test_env_overrides_file(self, tmp_path, clean_env):
        """Verify environment variables win over the file."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"stream": {"source": "http://file/stream"}}))
        clean_env.setenv("PRINTSTREAMER_STREAM_SOURCE", "http://env/stream")
        clean_env.setenv("PORT", "9090")

        settings = load_config(str(path))

        assert settings.stream.source == "http://env/stream"
        assert settings.server.port == 9090

    def test_invalid_value_rejected(self, tmp_path, clean_env):
        """Verify out-of-range values fail validation."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"stream": {"target_fps": 0}}))

        with pytest.raises(ValidationError):
            load_config(str(path))


class TestRequired:
    """Tests for check_required() and ensure_required()."""

    def test_missing_source(self):
        """Verify an empty camera source is reported with a key listing."""
        settings = Settings()

        assert check_required(settings) == ["stream.source"]
        with pytest.raises(ConfigurationError) as excinfo:
            ensure_required(settings)
        assert "stream.source" in str(excinfo.value)
        assert "timelapse.last_layer_offset" in str(excinfo.value)

    def test_present_source(self, settings):
        """Verify a configured source passes."""
        assert check_required(settings) == []
        ensure_required(settings)

    def test_help_lists_nested_keys(self):
        """Verify nested models are flattened to dotted keys."""
        text = config_help()

        assert "youtube.oauth.client_id" in text
        assert "youtube.polling.requests_per_minute" in text


class TestApplyAndSave:
    """Tests for apply_settings() and save_config()."""

    def test_apply_in_place(self, settings):
        """Verify sub-model identity is kept while values change."""
        stream = settings.stream
        updated = Settings.model_validate({
            **settings.model_dump(),
            "stream": {**settings.stream.model_dump(), "target_fps": 12},
        })

        apply_settings(settings, updated)

        assert settings.stream is stream
        assert stream.target_fps == 12

    def test_save_round_trip(self, settings, tmp_path, clean_env):
        """Verify a saved file loads back to the same settings."""
        path = tmp_path / "saved.yaml"

        save_config(settings, str(path))

        assert load_config(str(path)) == settings
        assert not (tmp_path / "saved.yaml.tmp").exists()
