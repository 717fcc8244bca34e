"""
Time-lapse sessions.

A session captures JPEG snapshots into its own directory while a print is
running and assembles them into an MP4 when it is stopped.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import httpx

from printstreamer.config import TimelapseConfig
from printstreamer.ffmpeg.commands import build_timelapse_args
from printstreamer.ffmpeg.process import EncoderProcess
from printstreamer.printer.state import PrintState
from printstreamer.streaming.error_handler import EncoderStartError

logger = logging.getLogger(__name__)

FRAME_PATTERN = "frame_*.jpg"


class TimelapseStore(ABC):
    """Frame store plus video assembly, one session per print job."""

    @abstractmethod
    async def start_session(self, name: str, filename: str = "") -> str:
        """Start capturing. Returns the session id."""

    @abstractmethod
    async def notify_progress(self, session_id: str, current_layer: Optional[int], total_layers: Optional[int]) -> None:
        """Forward layer progress."""

    async def notify_state(self, session_id: str, state: PrintState) -> None:
        """Forward the printer state. Stores that ignore it need not override."""

    @abstractmethod
    async def stop_session(self, session_id: str) -> Optional[str]:
        """Stop capturing and assemble the video. Returns its path, or None."""

    @abstractmethod
    def last_frame(self, session_id: str) -> Optional[bytes]:
        """Most recent frame of a session, for thumbnails."""

    async def close(self) -> None:
        """Stop all sessions without assembling."""


@dataclass
class _Session:
    session_id: str
    directory: Path
    filename: str
    frame_index: int = 0
    current_layer: Optional[int] = None
    total_layers: Optional[int] = None
    paused: bool = False
    capture_task: Optional[asyncio.Task] = None


class FileTimelapseStore(TimelapseStore):
    """
    Stores frames as ``<directory>/<session>/frame_%06d.jpg``.

    Usage:
        store = FileTimelapseStore(config.timelapse)
        session_id = await store.start_session("benchy", "benchy.gcode")
        ...
        video = await store.stop_session(session_id)
    """

    def __init__(
        self,
        config: Optional[TimelapseConfig] = None,
        ffmpeg_path: str = "ffmpeg",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        command_builder: Optional[Callable[[str, str, int], list[str]]] = None,
        capture_loop: bool = True,
    ):
        self.config = config or TimelapseConfig()
        self.root = Path(self.config.directory)
        self._ffmpeg_path = ffmpeg_path
        self._command_builder = command_builder or self._default_command
        self._capture_loop = capture_loop
        self._client = httpx.AsyncClient(timeout=10.0, transport=transport)
        self._sessions: dict[str, _Session] = {}

    @property
    def active_sessions(self) -> list[str]:
        return list(self._sessions)

    async def start_session(self, name: str, filename: str = "") -> str:
        session_id = name
        suffix = 2
        while session_id in self._sessions or (self.root / session_id).exists():
            session_id = f"{name}_{suffix}"
            suffix += 1

        directory = self.root / session_id
        directory.mkdir(parents=True)
        session = _Session(session_id, directory, filename)
        self._sessions[session_id] = session

        if self._capture_loop:
            session.capture_task = asyncio.create_task(self._capture(session))

        logger.info(f"Timelapse session '{session_id}' started for '{filename or name}'")
        return session_id

    async def notify_progress(self, session_id: str, current_layer: Optional[int], total_layers: Optional[int]) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        if current_layer is not None and current_layer != session.current_layer:
            logger.debug(f"Timelapse '{session_id}' layer {current_layer}/{total_layers}")
        session.current_layer = current_layer
        session.total_layers = total_layers

    async def notify_state(self, session_id: str, state: PrintState) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.paused = state == PrintState.PAUSED

    async def capture_frame(self, session_id: str) -> bool:
        """Take one snapshot into the session. False when nothing was written."""
        session = self._sessions.get(session_id)
        if session is None or not self._should_capture(session):
            return False

        try:
            response = await self._client.get(self.config.snapshot_url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.debug(f"Timelapse snapshot failed: {e}")
            return False

        data = response.content
        if not data:
            return False

        path = session.directory / f"frame_{session.frame_index:06d}.jpg"
        await asyncio.to_thread(path.write_bytes, data)
        session.frame_index += 1
        return True

    async def stop_session(self, session_id: str) -> Optional[str]:
        session = self._sessions.pop(session_id, None)
        if session is None:
            logger.warning(f"Timelapse session '{session_id}' is not active")
            return None

        await self._cancel_capture(session)

        frames = sorted(session.directory.glob(FRAME_PATTERN))
        if not frames:
            logger.info(f"Timelapse '{session_id}' has no frames, skipping video")
            return None

        output = session.directory / f"{session_id}.mp4"
        argv = self._command_builder(str(session.directory), str(output), self.config.fps)
        encoder = EncoderProcess(f"timelapse-{session_id}")
        try:
            await encoder.start(argv, capture_stdout=False)
        except EncoderStartError as e:
            logger.error(f"Timelapse '{session_id}' assembly could not start: {e}")
            return None

        result = await encoder.wait()
        if result.return_code != 0 or not output.exists():
            logger.error(
                f"Timelapse '{session_id}' assembly failed (code {result.return_code}): "
                f"{result.stderr_tail.strip()}"
            )
            return None

        logger.info(f"Timelapse '{session_id}' created from {len(frames)} frames: {output}")
        return str(output)

    def last_frame(self, session_id: str) -> Optional[bytes]:
        directory = self.root / session_id
        if not directory.is_dir():
            return None
        frames = sorted(directory.glob(FRAME_PATTERN))
        if not frames:
            return None
        try:
            return frames[-1].read_bytes()
        except OSError as e:
            logger.warning(f"Could not read last frame of '{session_id}': {e}")
            return None

    async def close(self) -> None:
        for session in list(self._sessions.values()):
            await self._cancel_capture(session)
        self._sessions.clear()
        await self._client.aclose()

    def _should_capture(self, session: _Session) -> bool:
        if session.paused:
            return False
        # Hold frames until the first layer is known to be printing
        if self.config.start_after_layer_1 and session.current_layer is not None and session.current_layer < 1:
            return False
        return True

    async def _capture(self, session: _Session) -> None:
        try:
            while True:
                await self.capture_frame(session.session_id)
                await asyncio.sleep(self.config.capture_interval_seconds)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.critical(f"Timelapse capture for '{session.session_id}' crashed: {e}", exc_info=True)

    @staticmethod
    async def _cancel_capture(session: _Session) -> None:
        task = session.capture_task
        session.capture_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _default_command(self, frames_dir: str, output_path: str, fps: int) -> list[str]:
        return build_timelapse_args(frames_dir, output_path, fps, self._ffmpeg_path)
