"""Health check API endpoint for PrintStreamer"""

import asyncio
import logging
import platform
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request

from printstreamer import __version__
from printstreamer.config import get_config

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


async def probe_ffmpeg(path: str, timeout: float = 5.0) -> dict[str, Any]:
    """Run ``ffmpeg -version`` and report the first line."""
    try:
        process = await asyncio.create_subprocess_exec(
            path,
            "-version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        return {"status": "error", "path": path, "error": f"Cannot run {path}: {e}"}

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return {"status": "error", "path": path, "error": "ffmpeg -version timed out"}

    if process.returncode != 0:
        return {"status": "error", "path": path, "error": f"Exit code {process.returncode}"}

    first_line = stdout.decode("utf-8", errors="replace").partition("\n")[0]
    return {"status": "ok", "path": path, "version": first_line}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("")
async def health_check() -> dict[str, Any]:
    """Liveness probe."""
    return {"status": "healthy", "version": __version__, "timestamp": _now()}


@router.get("/detailed")
async def detailed_health_check(request: Request) -> dict[str, Any]:
    """
    Component status for the encoder binary, the streamer, live audio and
    the printer connection.

    Overall status is ``degraded`` when FFmpeg cannot run or the printer
    has not reported a state yet.
    """
    state = request.app.state
    coordinator = getattr(state, "coordinator", None)
    broadcaster = getattr(state, "audio_broadcaster", None)
    observer = getattr(state, "printer_observer", None)

    ffmpeg = await probe_ffmpeg(get_config().ffmpeg.path or "ffmpeg")
    printer_connected = observer is not None and observer.last_state is not None

    status = "healthy"
    if ffmpeg["status"] != "ok" or not printer_connected:
        status = "degraded"
        logger.debug(f"Health degraded: ffmpeg={ffmpeg['status']}, printer_connected={printer_connected}")

    return {
        "status": status,
        "version": __version__,
        "timestamp": _now(),
        "python": platform.python_version(),
        "components": {
            "ffmpeg": ffmpeg,
            "streamer": coordinator.status() if coordinator is not None else None,
            "audio": broadcaster.status() if broadcaster is not None else None,
            "printer": {"connected": printer_connected},
        },
    }
