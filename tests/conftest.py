"""
PrintStreamer Test Configuration

Shared fixtures and configuration for all tests.
"""

import os
import sys
import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import pytest

import printstreamer.config as config_module
from printstreamer.config import PrintStreamerConfig


# ============ Temporary File Fixtures ============


@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(scope="function")
def audio_dir(temp_dir: Path) -> Path:
    """Folder with a few fake tracks (not real audio)."""
    folder = temp_dir / "audio"
    folder.mkdir()
    for name in ("alpha.mp3", "Bravo.mp3", "charlie.flac"):
        (folder / name).write_bytes(b"\x00" * 128)
    (folder / "notes.txt").write_text("not audio")
    return folder


@pytest.fixture(scope="function")
def temp_config_file(temp_dir: Path) -> Path:
    """Create a temporary config file."""
    config_file = temp_dir / "config.yaml"
    config_content = """
server:
  host: "127.0.0.1"
  port: 9090
  debug: true

logging:
  level: "DEBUG"

audio:
  folder: "music"
  feed_port: 54000

print:
  auto_broadcast: false
"""
    config_file.write_text(config_content)
    return config_file


# ============ Config Fixtures ============


@pytest.fixture(autouse=True)
def reset_config():
    """Drop any configuration a test loaded."""
    yield
    config_module._config = None


@pytest.fixture
def test_config(temp_dir: Path) -> Generator[PrintStreamerConfig, None, None]:
    """Install a fresh in-memory configuration rooted in the temp directory."""
    config = PrintStreamerConfig()
    config.audio.folder = str(temp_dir / "audio")
    config.youtube.token_file = str(temp_dir / "token.json")
    config.reuse.store_file = str(temp_dir / "reuse.json")
    config.timelapse.directory = str(temp_dir / "timelapse")
    # Keep the readiness loop fast in tests
    config.youtube.ingestion_wait_seconds = 0.2
    config.youtube.ingestion_poll_seconds = 0.01
    config.youtube.retry_seconds = 0.01
    config.youtube.transition_backoff_base = 0.01
    config.youtube.transition_backoff_max = 0.02

    with patch.object(config_module, "_config", config):
        yield config


# ============ Child Process Fixtures ============


@pytest.fixture
def python_child() -> list[str]:
    """Interpreter prefix for tests that need a real child process."""
    return [sys.executable, "-c"]


# ============ Environment Fixtures ============


@pytest.fixture(autouse=True)
def clean_environment():
    """Clean environment variables for each test."""
    original_env = os.environ.copy()

    for key in list(os.environ.keys()):
        if key.startswith("PRINTSTREAMER_"):
            del os.environ[key]

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def mock_env_vars():
    """Set up mock environment variables."""
    env_vars = {
        "PRINTSTREAMER_PORT": "9100",
        "PRINTSTREAMER_DEBUG": "true",
        "PRINTSTREAMER_MOONRAKER_URL": "http://printer.local:7125",
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


# ============ Markers ============


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
    config.addinivalue_line("markers", "ffmpeg: FFmpeg required")
