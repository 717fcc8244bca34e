"""
Unit tests for configuration module.
"""

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from printstreamer.config import (
    AudioConfig,
    LoggingConfig,
    MoonrakerConfig,
    PrintConfig,
    PrintStreamerConfig,
    ServerConfig,
    load_config,
    reload_config,
)


@pytest.mark.unit
class TestServerConfig:
    """Tests for ServerConfig."""

    def test_default_values(self):
        """Test default server configuration values."""
        config = ServerConfig()

        assert config.host == "0.0.0.0"
        assert config.port == 8080
        assert config.debug is False
        assert config.log_level == "INFO"

    def test_custom_values(self):
        """Test custom server configuration."""
        config = ServerConfig(host="127.0.0.1", port=9000, debug=True, log_level="DEBUG")

        assert config.host == "127.0.0.1"
        assert config.port == 9000
        assert config.debug is True


@pytest.mark.unit
class TestSectionDefaults:
    """Defaults that the runtime relies on."""

    def test_logging_defaults(self):
        config = LoggingConfig()

        assert config.level == "INFO"
        assert config.file is None
        assert config.max_size == "10MB"

    def test_audio_defaults(self):
        config = AudioConfig()

        assert config.feed_host == "127.0.0.1"
        assert config.feed_port == 53333
        assert config.min_run_seconds == 0.5

    def test_print_defaults(self):
        config = PrintConfig()

        assert config.auto_broadcast is True
        assert config.end_stream_after_print is True
        assert config.offline_grace_seconds == 600.0
        assert config.idle_finalize_delay_seconds == 20.0

    def test_moonraker_policy_defaults(self):
        config = MoonrakerConfig()

        assert "FIRMWARE_RESTART" in config.disallowed_prefixes
        assert "M112" in config.confirmation_prefixes

    def test_nested_sections(self):
        config = PrintStreamerConfig()

        assert config.reuse.enabled is True
        assert config.reuse.context_key is None
        assert config.youtube.allow_access_token_fallback is False


@pytest.mark.unit
class TestLoadConfig:
    """Tests for load_config function."""

    def test_load_from_file(self, temp_config_file: Path):
        """Test loading configuration from YAML file."""
        config = load_config(str(temp_config_file))

        assert config.server.host == "127.0.0.1"
        assert config.server.port == 9090
        assert config.server.debug is True
        assert config.audio.folder == "music"
        assert config.audio.feed_port == 54000
        assert config.print.auto_broadcast is False

    def test_missing_file_uses_defaults(self, temp_dir: Path):
        """A path that does not exist yields the defaults."""
        config = load_config(str(temp_dir / "missing.yaml"))

        assert config.server.port == 8080

    def test_env_overrides(self, temp_config_file: Path, mock_env_vars):
        """Environment variables win over the file."""
        config = load_config(str(temp_config_file))

        assert config.server.port == 9100
        assert config.server.debug is True
        assert config.moonraker.base_url == "http://printer.local:7125"

    def test_config_path_from_environment(self, temp_config_file: Path):
        with patch.dict(os.environ, {"PRINTSTREAMER_CONFIG": str(temp_config_file)}):
            config = reload_config()

        assert config.server.port == 9090

    def test_env_values_keep_field_types(self, temp_dir: Path):
        env = {"PRINTSTREAMER_MOONRAKER_API_KEY": "12345", "PRINTSTREAMER_FEED_PORT": "54001"}
        with patch.dict(os.environ, env):
            config = load_config(str(temp_dir / "missing.yaml"))

        assert config.moonraker.api_key == "12345"
        assert config.audio.feed_port == 54001

    def test_invalid_env_value(self, temp_dir: Path):
        with patch.dict(os.environ, {"PRINTSTREAMER_PORT": "not-a-port"}):
            with pytest.raises(ValidationError):
                load_config(str(temp_dir / "missing.yaml"))

    def test_empty_section_in_file(self, temp_dir: Path):
        config_file = temp_dir / "config.yaml"
        config_file.write_text("server:\n")

        with patch.dict(os.environ, {"PRINTSTREAMER_PORT": "9200"}):
            config = load_config(str(config_file))

        assert config.server.port == 9200
