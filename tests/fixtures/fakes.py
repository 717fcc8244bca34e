"""
Test Fakes

In-memory stand-ins for the broadcast provider, the video streamer and
printer snapshots.
"""

import asyncio
import itertools
from datetime import timedelta
from typing import Optional

from printstreamer.broadcast.provider import BroadcastInfo, BroadcastProvider
from printstreamer.ffmpeg.commands import VideoStreamSettings
from printstreamer.ffmpeg.process import ExitReason, ProcessExit
from printstreamer.printer.state import PrinterState, PrintState


class FakeProvider(BroadcastProvider):
    """Records every call; behavior is switched with attributes."""

    name = "fake"

    def __init__(self):
        self.authenticated = True
        self.ingestion_active = True
        self.transition_results: list = []
        self.create_delay = 0.0
        self.privacy: dict[str, Optional[str]] = {}
        self.lifecycle: dict[str, str] = {}
        self.calls: list[tuple] = []
        self.created = 0
        self.ended: list[str] = []
        self.playlist_items: list[tuple[str, str]] = []
        self.uploaded: list[str] = []
        self.thumbnails: list[str] = []
        self._ids = itertools.count(1)

    async def authenticate(self) -> bool:
        self.calls.append(("authenticate",))
        return self.authenticated

    async def create_broadcast(self, title, description="", privacy="unlisted", category_id="28") -> BroadcastInfo:
        self.calls.append(("create_broadcast", title))
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        self.created += 1
        n = next(self._ids)
        broadcast_id = f"b{n}"
        self.privacy[broadcast_id] = privacy
        return BroadcastInfo(broadcast_id, "rtmp://a.rtmp.youtube.com/live2", f"key-{n}", f"s{n}")

    async def get_broadcast_privacy(self, broadcast_id: str) -> Optional[str]:
        self.calls.append(("get_broadcast_privacy", broadcast_id))
        return self.privacy.get(broadcast_id)

    async def get_lifecycle_status(self, broadcast_id: str) -> Optional[str]:
        self.calls.append(("get_lifecycle_status", broadcast_id))
        return self.lifecycle.get(broadcast_id)

    async def wait_for_ingestion(self, stream_id, timeout=30.0) -> bool:
        self.calls.append(("wait_for_ingestion", stream_id))
        await asyncio.sleep(0)
        return self.ingestion_active

    async def transition_to_live(self, broadcast_id: str) -> bool:
        self.calls.append(("transition_to_live", broadcast_id))
        if self.transition_results:
            result = self.transition_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return True

    async def end_broadcast(self, broadcast_id: str) -> bool:
        self.calls.append(("end_broadcast", broadcast_id))
        self.ended.append(broadcast_id)
        self.lifecycle[broadcast_id] = "complete"
        return True

    async def upload_video(self, path, title, description="") -> Optional[str]:
        self.calls.append(("upload_video", path, title))
        self.uploaded.append(path)
        return f"v{len(self.uploaded)}"

    async def set_thumbnail(self, video_id: str, image: bytes) -> bool:
        self.thumbnails.append(video_id)
        return True

    async def ensure_playlist(self, name, privacy="unlisted") -> Optional[str]:
        return f"pl-{name}"

    async def add_to_playlist(self, playlist_id: str, video_id: str) -> bool:
        self.playlist_items.append((playlist_id, video_id))
        return True

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)


class FakeStreamer:
    """Video streamer whose exit is controlled by the test."""

    def __init__(self, settings: VideoStreamSettings):
        self.settings = settings
        self.started = False
        self.stopped = False
        self._exit: Optional[asyncio.Future] = None

    async def start(self) -> None:
        self._exit = asyncio.get_running_loop().create_future()
        self.started = True

    async def wait(self) -> ProcessExit:
        return await asyncio.shield(self._exit)

    async def stop(self, timeout=None) -> Optional[ProcessExit]:
        self.stopped = True
        self.finish(ExitReason.KILLED)
        return self._exit.result() if self._exit else None

    def kill(self) -> None:
        self.finish(ExitReason.KILLED)

    def crash(self) -> None:
        self.finish(ExitReason.CRASHED, 1)

    def finish(self, reason: ExitReason, code: Optional[int] = None) -> None:
        if self._exit is not None and not self._exit.done():
            self._exit.set_result(ProcessExit(reason, code, "", 0.0))

    def is_running(self) -> bool:
        return self._exit is not None and not self._exit.done()


class FakeStreamerFactory:
    """Builds FakeStreamers and keeps them for inspection."""

    def __init__(self):
        self.streamers: list[FakeStreamer] = []

    def __call__(self, settings: VideoStreamSettings) -> FakeStreamer:
        streamer = FakeStreamer(settings)
        self.streamers.append(streamer)
        return streamer

    @property
    def last(self) -> FakeStreamer:
        return self.streamers[-1]


def printer_state(
    state: str = "printing",
    filename: str = "part.gcode",
    progress: Optional[float] = None,
    layer: Optional[int] = None,
    total: Optional[int] = None,
    remaining: Optional[float] = None,
) -> PrinterState:
    """Build a snapshot with only the fields a test cares about."""
    return PrinterState(
        state=PrintState.parse(state),
        filename=filename,
        progress_percent=progress,
        remaining=timedelta(seconds=remaining) if remaining is not None else None,
        current_layer=layer,
        total_layers=total,
    )


async def eventually(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
