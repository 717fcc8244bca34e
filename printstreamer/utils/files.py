"""File helpers shared by the persistence layers."""

import json
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

_INVALID_NAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def atomic_write_json(path: str | Path, data: Any) -> None:
    """
    Write JSON to ``path`` so readers see either the old or the new file.

    The payload goes to a temp file in the same directory which is then
    renamed over the target.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def sanitize_filename(name: str, fallback: str = "timelapse") -> str:
    """Replace characters that are invalid in file names."""
    cleaned = _INVALID_NAME_CHARS.sub("_", name).strip().strip(".")
    return cleaned or fallback


def session_name_for_job(filename: str | None, now: datetime | None = None) -> str:
    """
    Derive a time-lapse session name from a job filename.

    ``part.gcode`` becomes ``part``; an empty filename yields
    ``printing_YYYYmmdd_HHMMSS``.
    """
    if filename and filename.strip():
        stem = Path(filename.strip()).stem
        return sanitize_filename(stem)
    now = now or datetime.now()
    return f"printing_{now.strftime('%Y%m%d_%H%M%S')}"
