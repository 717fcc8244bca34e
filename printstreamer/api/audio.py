"""Background audio API endpoints and the live MP3 stream."""

import logging
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from printstreamer.api.dependencies import get_broadcaster, get_bus, get_coordinator, get_library
from printstreamer.audio.library import AudioLibrary, RepeatMode
from printstreamer.broadcast.coordinator import BroadcastCoordinator
from printstreamer.streaming.audio_broadcaster import AudioBroadcaster
from printstreamer.streaming.audio_bus import AudioBus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audio", tags=["Audio"])
stream_router = APIRouter(prefix="/stream", tags=["Stream"])


class EnabledRequest(BaseModel):
    enabled: bool


class EnqueueRequest(BaseModel):
    names: list[str]


class TrackRequest(BaseModel):
    name: str


class RepeatRequest(BaseModel):
    mode: RepeatMode


class FolderRequest(BaseModel):
    folder: str


@router.get("/state")
async def audio_state(broadcaster: AudioBroadcaster = Depends(get_broadcaster)) -> dict[str, Any]:
    return broadcaster.status()


@router.get("/tracks")
async def list_tracks(library: AudioLibrary = Depends(get_library)) -> list[dict[str, str]]:
    return [{"name": t.name, "path": t.path} for t in library.tracks]


@router.post("/rescan")
async def rescan(library: AudioLibrary = Depends(get_library)) -> dict[str, Any]:
    return {"ok": True, "tracks": library.rescan()}


@router.post("/folder")
async def set_folder(body: FolderRequest, library: AudioLibrary = Depends(get_library)) -> dict[str, Any]:
    library.set_folder(body.folder)
    return {"ok": True, "folder": library.folder, "tracks": len(library.tracks)}


@router.post("/play")
async def play(broadcaster: AudioBroadcaster = Depends(get_broadcaster),
               library: AudioLibrary = Depends(get_library)) -> dict[str, Any]:
    library.play()
    broadcaster.prime()
    return broadcaster.status()


@router.post("/pause")
async def pause(broadcaster: AudioBroadcaster = Depends(get_broadcaster),
                library: AudioLibrary = Depends(get_library)) -> dict[str, Any]:
    library.pause()
    return broadcaster.status()


@router.post("/toggle")
async def toggle(broadcaster: AudioBroadcaster = Depends(get_broadcaster),
                 library: AudioLibrary = Depends(get_library)) -> dict[str, Any]:
    library.toggle()
    return broadcaster.status()


@router.post("/skip")
async def skip(broadcaster: AudioBroadcaster = Depends(get_broadcaster)) -> dict[str, Any]:
    path = broadcaster.skip()
    return {"ok": path is not None, "current": path}


@router.post("/select")
async def select_track(body: TrackRequest,
                       broadcaster: AudioBroadcaster = Depends(get_broadcaster),
                       library: AudioLibrary = Depends(get_library)) -> dict[str, Any]:
    path = library.select_track(body.name)
    if path is None:
        raise HTTPException(status_code=404, detail=f"Track not found: {body.name}")
    broadcaster.interrupt()
    return {"ok": True, "current": path}


@router.post("/enqueue")
async def enqueue(body: EnqueueRequest, library: AudioLibrary = Depends(get_library)) -> dict[str, Any]:
    added = library.enqueue(*body.names)
    return {"ok": added > 0, "added": added, "queue": library.get_state().queue}


@router.delete("/queue/{index}")
async def remove_from_queue(index: int, library: AudioLibrary = Depends(get_library)) -> dict[str, Any]:
    if not library.remove_from_queue(index):
        raise HTTPException(status_code=404, detail=f"No queue entry at {index}")
    return {"ok": True, "queue": library.get_state().queue}


@router.post("/clear")
async def clear_queue(library: AudioLibrary = Depends(get_library)) -> dict[str, Any]:
    library.clear_queue()
    return {"ok": True}


@router.post("/shuffle")
async def set_shuffle(body: EnabledRequest, library: AudioLibrary = Depends(get_library)) -> dict[str, Any]:
    library.set_shuffle(body.enabled)
    return library.get_state().to_dict()


@router.post("/repeat")
async def set_repeat(body: RepeatRequest, library: AudioLibrary = Depends(get_library)) -> dict[str, Any]:
    library.set_repeat(body.mode)
    return library.get_state().to_dict()


@router.post("/enabled")
async def set_enabled(body: EnabledRequest,
                      broadcaster: AudioBroadcaster = Depends(get_broadcaster)) -> dict[str, Any]:
    await broadcaster.set_enabled(body.enabled)
    return {"enabled": broadcaster.enabled}


@router.get("/end-after-song")
async def get_end_after_song(coordinator: BroadcastCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    return {"enabled": coordinator.end_stream_after_song}


@router.post("/end-after-song")
async def set_end_after_song(body: EnabledRequest,
                             coordinator: BroadcastCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    coordinator.end_stream_after_song = body.enabled
    logger.info(f"End stream after song set to {body.enabled}")
    return {"enabled": coordinator.end_stream_after_song}


@stream_router.get("/audio")
async def live_audio(request: Request, bus: AudioBus = Depends(get_bus)) -> StreamingResponse:
    """
    Live MP3 stream.

    Listeners join at the live edge; slow listeners lose the oldest chunks.
    """
    broadcaster = getattr(request.app.state, "audio_broadcaster", None)
    if broadcaster is not None and not broadcaster.enabled:
        raise HTTPException(status_code=503, detail="Live audio disabled")

    subscription = bus.subscribe()
    logger.debug(f"Audio listener {subscription.id} connected")

    async def generate() -> AsyncIterator[bytes]:
        async for chunk in bus.stream(subscription):
            yield chunk

    return StreamingResponse(
        generate(),
        media_type="audio/mpeg",
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
