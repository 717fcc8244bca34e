"""Logging setup for PrintStreamer with console and rotating file output"""

import logging
import logging.handlers
import re
import sys
from pathlib import Path

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

# Stream keys are the last path segment of an RTMP ingestion URL
_RTMP_KEY = re.compile(r"(rtmps?://[^\s/]+(?:/[^\s/]+)*?)/([^\s/]{8,})(?=\s|$)")

# Libraries that log every request or frame at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class StreamKeyFilter(logging.Filter):
    """Masks RTMP stream keys that slip into log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if "rtmp" in message:
            masked = _RTMP_KEY.sub(lambda m: f"{m.group(1)}/{mask_secret(m.group(2))}", message)
            if masked != message:
                record.msg = masked
                record.args = None
        return True


def setup_logging(
    log_level: str = "INFO",
    log_file_name: str | None = None,
    log_to_console: bool = True,
    log_to_file: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    log_format: str | None = None,
) -> logging.Logger:
    """
    Configure the root logger for the agent.

    Args:
        log_level: Level name, unknown names fall back to INFO
        log_file_name: Rotating log file; relative paths land under logs/
        log_to_console: Log to stdout
        log_to_file: Log to the rotating file (needs ``log_file_name``)
        max_bytes: Rotation size
        backup_count: Rotated files to keep
        log_format: Format for the file handler

    Returns:
        The root logger
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    key_filter = StreamKeyFilter()

    if log_to_console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))
        console.addFilter(key_filter)
        root.addHandler(console)

    log_path = None
    if log_to_file and log_file_name:
        log_path = Path(log_file_name).expanduser()
        if not log_path.is_absolute() and log_path.parent == Path("."):
            log_path = Path("logs") / log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)

        rotating = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        rotating.setFormatter(logging.Formatter(log_format or DEFAULT_FORMAT))
        rotating.addFilter(key_filter)
        root.addHandler(rotating)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    root.info(f"Logging at {logging.getLevelName(level)}" + (f", file {log_path}" if log_path else ""))
    return root


def parse_size(value: str, default: int = 10 * 1024 * 1024) -> int:
    """
    Parse a size string such as "10MB" into bytes.

    Unknown units fall back to ``default``.
    """
    size = value.strip().upper()
    units = {"GB": 1024 ** 3, "MB": 1024 ** 2, "KB": 1024}
    for suffix, factor in units.items():
        if size.endswith(suffix):
            try:
                return int(size[: -len(suffix)]) * factor
            except ValueError:
                return default
    try:
        return int(size)
    except ValueError:
        return default


def mask_secret(value: str | None, visible: int = 4) -> str:
    """Mask a stream key or token for logging."""
    if not value:
        return "<empty>"
    if len(value) <= visible:
        return "***"
    return f"{value[:visible]}***"
