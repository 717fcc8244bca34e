"""Live broadcast API endpoints."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from printstreamer.api.dependencies import get_coordinator
from printstreamer.broadcast.coordinator import BroadcastCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/live", tags=["Live"])


class StartBroadcastRequest(BaseModel):
    """Optional parameters for a manual broadcast start."""
    context_key: Optional[str] = None
    title: Optional[str] = None


@router.get("/status")
async def live_status(
    request: Request,
    coordinator: BroadcastCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """Streamer and broadcast booleans plus the orchestrator state."""
    status = coordinator.status()
    orchestrator = getattr(request.app.state, "orchestrator", None)
    status["print"] = orchestrator.status() if orchestrator is not None else None
    return status


@router.post("/start")
async def start_broadcast(
    body: Optional[StartBroadcastRequest] = None,
    coordinator: BroadcastCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    body = body or StartBroadcastRequest()
    result = await coordinator.start_broadcast(context_key=body.context_key, title=body.title)
    return result.to_dict()


@router.post("/stop")
async def stop_broadcast(
    keep_local: bool = False,
    coordinator: BroadcastCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    result = await coordinator.stop_broadcast(keep_local=keep_local)
    return result.to_dict()


@router.post("/local")
async def start_local_stream(
    coordinator: BroadcastCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    result = await coordinator.start_local_stream()
    return result.to_dict()


@router.post("/restart")
async def restart_streamer(
    coordinator: BroadcastCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """Restart the encoder with the current configuration, keeping the broadcast."""
    result = await coordinator.restart_streamer_with_config()
    return result.to_dict()


@router.post("/interrupt")
async def interrupt_streamer(
    coordinator: BroadcastCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return {"ok": coordinator.interrupt_streamer()}


@router.post("/repair")
async def repair_stream(
    coordinator: BroadcastCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """Restart the streamer and fall back to local-only if ingestion does not recover."""
    result = await coordinator.ensure_streaming_healthy()
    return result.to_dict()
