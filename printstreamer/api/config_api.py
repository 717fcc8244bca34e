"""
Runtime configuration toggles.

Changes apply to the loaded configuration object immediately and are not
written back to the YAML file.
"""

import logging
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel

from printstreamer.config import get_config

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/config", tags=["Config"])


class ToggleRequest(BaseModel):
    enabled: bool


def _toggles() -> dict[str, Any]:
    config = get_config()
    return {
        "autoBroadcast": config.print.auto_broadcast,
        "endStreamAfterPrint": config.print.end_stream_after_print,
        "uploadTimelapse": config.print.upload_timelapse,
        "audioEnabled": config.audio.enabled,
        "privacy": config.youtube.privacy,
        "playlist": config.youtube.playlist_name,
    }


@router.get("")
async def get_toggles() -> dict[str, Any]:
    return _toggles()


@router.post("/auto-broadcast")
async def set_auto_broadcast(body: ToggleRequest) -> dict[str, Any]:
    get_config().print.auto_broadcast = body.enabled
    logger.info(f"Auto-broadcast set to {body.enabled}")
    return _toggles()


@router.post("/end-stream-after-print")
async def set_end_stream_after_print(body: ToggleRequest) -> dict[str, Any]:
    get_config().print.end_stream_after_print = body.enabled
    logger.info(f"End stream after print set to {body.enabled}")
    return _toggles()


@router.post("/upload-timelapse")
async def set_upload_timelapse(body: ToggleRequest) -> dict[str, Any]:
    get_config().print.upload_timelapse = body.enabled
    logger.info(f"Timelapse upload set to {body.enabled}")
    return _toggles()
