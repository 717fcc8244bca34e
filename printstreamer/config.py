"""
Configuration management for PrintStreamer.

Handles loading, validation, and access to application configuration.
"""

import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, Field

# Global configuration instance
_config: Optional["PrintStreamerConfig"] = None


class ServerConfig(BaseModel):
    """Operator API server configuration."""
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False
    log_level: str = "INFO"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    max_size: str = "10MB"
    backup_count: int = 5
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class FFmpegConfig(BaseModel):
    """FFmpeg binary and process handling."""
    path: str = "ffmpeg"
    stop_timeout: float = 5.0  # Grace period before a child is killed
    stderr_tail_chars: int = 2000
    read_size: int = 8192


class StreamConfig(BaseModel):
    """Video streamer settings."""
    source_url: str = "http://127.0.0.1/webcam/?action=stream"
    audio_url: Optional[str] = None  # Defaults to the local live audio endpoint
    use_audio: bool = True
    fps: int = 30
    bitrate_kbps: int = 2500
    width: int = 640
    height: int = 480
    overlay_enabled: bool = False
    overlay_text_file: Optional[str] = None
    overlay_font_file: str = "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf"
    overlay_font_size: int = 16
    overlay_box: bool = True
    local_preview_url: Optional[str] = None
    end_stream_after_song: bool = False


class AudioConfig(BaseModel):
    """Background music and live MP3 broadcast settings."""
    enabled: bool = True
    folder: str = "audio"
    feed_host: str = "127.0.0.1"
    feed_port: int = 53333
    bitrate: str = "192k"
    subscriber_buffer: int = 64
    backoff_base: float = 0.5
    backoff_max: float = 10.0
    backoff_jitter: float = 0.2
    min_run_seconds: float = 0.5  # Exits sooner than this count as failures


class YouTubeConfig(BaseModel):
    """YouTube Live provider configuration."""
    client_id: str = ""
    client_secret: str = ""
    token_file: str = "youtube_token.json"
    title: str = "Print Streamer Live"
    description: str = "Live stream from my 3D printer"
    privacy: str = "unlisted"
    category_id: str = "28"
    playlist_name: Optional[str] = None
    playlist_privacy: str = "unlisted"
    ingestion_wait_seconds: float = 30.0
    ingestion_poll_seconds: float = 2.0
    retry_seconds: float = 30.0
    transition_attempts: int = 5
    transition_backoff_base: float = 2.0
    transition_backoff_max: float = 30.0
    allow_access_token_fallback: bool = False
    request_timeout: float = 30.0


class ReuseConfig(BaseModel):
    """Broadcast reuse settings."""
    enabled: bool = True
    store_file: str = "youtube_reuse_store.json"
    ttl_minutes: int = 24 * 60
    only_unlisted_or_private: bool = True
    # Reuse key for print-driven broadcasts; the job's session name when unset
    context_key: Optional[str] = None


class PrintConfig(BaseModel):
    """Print-driven automation settings."""
    auto_broadcast: bool = True
    end_stream_after_print: bool = True
    upload_timelapse: bool = False
    offline_grace_seconds: float = 600.0
    idle_finalize_delay_seconds: float = 20.0
    last_layer_offset: int = 1
    last_layer_remaining_seconds: float = 30.0
    last_layer_progress_percent: float = 98.5


class TimelapseConfig(BaseModel):
    """Time-lapse capture settings."""
    directory: str = "timelapse"
    snapshot_url: str = "http://127.0.0.1/webcam/?action=snapshot"
    capture_interval_seconds: float = 10.0
    fps: int = 30
    start_after_layer_1: bool = True


class MoonrakerConfig(BaseModel):
    """Printer controller connection and console policy."""
    base_url: str = "http://127.0.0.1:7125"
    api_key: str = ""
    poll_interval_seconds: float = 2.0
    request_timeout: float = 10.0
    command_interval_seconds: float = 0.1
    disallowed_prefixes: list[str] = Field(default_factory=lambda: ["FIRMWARE_RESTART", "RESTART"])
    confirmation_prefixes: list[str] = Field(default_factory=lambda: ["M112", "SAVE_CONFIG"])
    max_tool_temp: float = 350.0
    max_bed_temp: float = 120.0
    console_lines: int = 500


class PrintStreamerConfig(BaseModel):
    """Main PrintStreamer configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    ffmpeg: FFmpegConfig = Field(default_factory=FFmpegConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    youtube: YouTubeConfig = Field(default_factory=YouTubeConfig)
    reuse: ReuseConfig = Field(default_factory=ReuseConfig)
    print: PrintConfig = Field(default_factory=PrintConfig)
    timelapse: TimelapseConfig = Field(default_factory=TimelapseConfig)
    moonraker: MoonrakerConfig = Field(default_factory=MoonrakerConfig)


# Environment variable -> (section, field). Values stay strings and are
# coerced by the pydantic models.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "PRINTSTREAMER_HOST": ("server", "host"),
    "PRINTSTREAMER_PORT": ("server", "port"),
    "PRINTSTREAMER_DEBUG": ("server", "debug"),
    "PRINTSTREAMER_LOG_LEVEL": ("logging", "level"),
    "PRINTSTREAMER_FFMPEG_PATH": ("ffmpeg", "path"),
    "PRINTSTREAMER_SOURCE_URL": ("stream", "source_url"),
    "PRINTSTREAMER_AUDIO_FOLDER": ("audio", "folder"),
    "PRINTSTREAMER_FEED_PORT": ("audio", "feed_port"),
    "PRINTSTREAMER_MOONRAKER_URL": ("moonraker", "base_url"),
    "PRINTSTREAMER_MOONRAKER_API_KEY": ("moonraker", "api_key"),
    "PRINTSTREAMER_YOUTUBE_CLIENT_ID": ("youtube", "client_id"),
    "PRINTSTREAMER_YOUTUBE_CLIENT_SECRET": ("youtube", "client_secret"),
    "PRINTSTREAMER_YOUTUBE_TOKEN_FILE": ("youtube", "token_file"),
}


def load_config(config_path: Optional[str] = None) -> PrintStreamerConfig:
    """
    Load configuration from YAML and the environment.

    Args:
        config_path: Path to the YAML file. Falls back to
            ``PRINTSTREAMER_CONFIG`` and then ``config.yaml`` in the working
            directory or the project root. A missing file means defaults.

    Returns:
        Loaded and validated configuration.

    Raises:
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If a value has the wrong type.
    """
    global _config

    path = _resolve_config_path(config_path)
    data = _read_yaml(path) if path is not None else {}
    _apply_env_overrides(data, os.environ)

    _config = PrintStreamerConfig.model_validate(data)
    return _config


def get_config() -> PrintStreamerConfig:
    """Current configuration, loaded on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> PrintStreamerConfig:
    """Drop the cached configuration and load it again."""
    global _config
    _config = None
    return load_config()


def _resolve_config_path(explicit: Optional[str]) -> Optional[Path]:
    chosen = explicit or os.environ.get("PRINTSTREAMER_CONFIG")
    if chosen:
        path = Path(chosen).expanduser()
        return path if path.is_file() else None

    for candidate in (Path.cwd() / "config.yaml", Path(__file__).resolve().parent.parent / "config.yaml"):
        if candidate.is_file():
            return candidate
    return None


def _read_yaml(path: Path) -> dict[str, Any]:
    with path.open(encoding="utf-8") as f:
        loaded = yaml.safe_load(f)
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")
    return loaded


def _apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> None:
    for env_var, (section, field) in ENV_OVERRIDES.items():
        value = environ.get(env_var)
        if value is None:
            continue
        target = data.get(section)
        if not isinstance(target, dict):
            target = data[section] = {}
        target[field] = value


class _ConfigProxy:
    """
    Lazy stand-in for the loaded configuration.

        from printstreamer.config import config
        config.audio.feed_port
    """

    def __getattr__(self, name: str) -> Any:
        return getattr(get_config(), name)

    def __repr__(self) -> str:
        return f"<ConfigProxy {get_config()!r}>"


config = _ConfigProxy()
