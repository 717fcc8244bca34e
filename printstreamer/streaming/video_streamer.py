"""
Camera video streamer.

A single FFmpeg run that takes the MJPEG camera feed plus an optional audio
URL and writes to RTMP, a local preview, or both. Restarts are the
coordinator's job; this class only runs and stops one encoder.
"""

import logging
from typing import Callable, Optional

from printstreamer.ffmpeg.commands import (
    StreamTarget,
    VideoStreamSettings,
    build_video_streamer_args,
)
from printstreamer.ffmpeg.process import EncoderProcess, ProcessExit

logger = logging.getLogger(__name__)


class VideoStreamer:
    """Runs one video encoder for the given settings."""

    def __init__(
        self,
        settings: VideoStreamSettings,
        ffmpeg_path: str = "ffmpeg",
        stop_timeout: float = 5.0,
        stderr_tail_chars: int = 2000,
        command_builder: Optional[Callable[[VideoStreamSettings], list[str]]] = None,
    ):
        self.settings = settings
        self._ffmpeg_path = ffmpeg_path
        self._stop_timeout = stop_timeout
        self._command_builder = command_builder or self._default_command
        self._encoder = EncoderProcess(
            f"video-{settings.target.value}",
            stderr_tail_chars=stderr_tail_chars,
            stop_timeout=stop_timeout,
        )

    @property
    def target(self) -> StreamTarget:
        return self.settings.target

    @property
    def stderr_tail(self) -> str:
        return self._encoder.stderr_tail

    @property
    def uptime_seconds(self) -> float:
        return self._encoder.uptime_seconds

    async def start(self) -> None:
        """
        Launch the encoder.

        Raises:
            EncoderStartError: If FFmpeg cannot be launched.
        """
        argv = self._command_builder(self.settings)
        logger.info(f"Starting video streamer (target={self.target.value}, fps={self.settings.fps})")
        await self._encoder.start(argv, capture_stdout=False)

    async def wait(self) -> ProcessExit:
        """Wait until the encoder exits."""
        return await self._encoder.wait()

    async def stop(self, timeout: Optional[float] = None) -> Optional[ProcessExit]:
        """Stop with a grace period, then kill the process tree."""
        return await self._encoder.stop(self._stop_timeout if timeout is None else timeout)

    def kill(self) -> None:
        self._encoder.kill()

    def is_running(self) -> bool:
        return self._encoder.is_running()

    def _default_command(self, settings: VideoStreamSettings) -> list[str]:
        return build_video_streamer_args(settings, self._ffmpeg_path)
