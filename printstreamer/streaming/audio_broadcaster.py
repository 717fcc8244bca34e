"""
Persistent MP3 audio broadcaster.

Keeps one FFmpeg encoder running against an internal HTTP feed that serves
whatever track the library currently points at. Encoder stdout goes into the
AudioBus. When the encoder reaches the end of a track the library advances;
when it fails the supervisor backs off and retries.
"""

import asyncio
import contextlib
import inspect
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

import uvicorn
from fastapi import FastAPI
from fastapi.responses import StreamingResponse

from printstreamer.audio.library import AudioLibrary
from printstreamer.config import AudioConfig
from printstreamer.ffmpeg.commands import build_audio_encoder_args
from printstreamer.ffmpeg.process import EncoderProcess, ExitReason
from printstreamer.streaming.audio_bus import AudioBus
from printstreamer.streaming.error_handler import EncoderStartError, compute_backoff

logger = logging.getLogger(__name__)

TrackFinishedCallback = Callable[[Optional[str]], Union[None, Awaitable[None]]]

FEED_CHUNK_SIZE = 8192
FEED_WAIT_SECONDS = 0.2


class FeedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the main app."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class AudioBroadcaster:
    """
    Supervises the audio encoder and serves its input feed.

    Usage:
        broadcaster = AudioBroadcaster(library, bus, config.audio)
        await broadcaster.start()
        ...
        broadcaster.interrupt()  # skip to the library's new current track
    """

    def __init__(
        self,
        library: AudioLibrary,
        bus: AudioBus,
        config: Optional[AudioConfig] = None,
        ffmpeg_path: str = "ffmpeg",
        read_size: int = 8192,
        stderr_tail_chars: int = 2000,
        stop_timeout: float = 5.0,
        command_builder: Optional[Callable[[str], list[str]]] = None,
        serve_feed: bool = True,
    ):
        self._library = library
        self._bus = bus
        self._config = config or AudioConfig()
        self._ffmpeg_path = ffmpeg_path
        self._read_size = read_size
        self._stderr_tail_chars = stderr_tail_chars
        self._stop_timeout = stop_timeout
        self._command_builder = command_builder or self._default_command
        self._serve_feed = serve_feed

        self._enabled = self._config.enabled
        self._encoder: Optional[EncoderProcess] = None
        self._supervisor_task: Optional[asyncio.Task] = None
        self._feed_server: Optional[FeedServer] = None
        self._feed_task: Optional[asyncio.Task] = None
        self._callbacks: list[TrackFinishedCallback] = []

        self._consecutive_failures = 0
        self._restarts = 0
        self._tracks_finished = 0

    @property
    def feed_url(self) -> str:
        return f"http://{self._config.feed_host}:{self._config.feed_port}/feed/"

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def tracks_finished(self) -> int:
        return self._tracks_finished

    def is_encoder_running(self) -> bool:
        return self._encoder is not None and self._encoder.is_running()

    async def start(self) -> None:
        """Start the feed listener and the encoder supervisor."""
        if self._serve_feed and self._feed_task is None:
            await self._start_feed_server()

        if self._supervisor_task is None or self._supervisor_task.done():
            self.prime()
            self._supervisor_task = asyncio.create_task(self._supervise())
            logger.info(f"Audio broadcaster started (enabled={self._enabled})")

    async def stop(self) -> None:
        """Stop the supervisor, the encoder and the feed listener."""
        if self._supervisor_task:
            self._supervisor_task.cancel()
            try:
                await self._supervisor_task
            except asyncio.CancelledError:
                pass
            self._supervisor_task = None

        encoder = self._encoder
        if encoder is not None:
            await encoder.stop(self._stop_timeout)
            self._encoder = None

        await self._stop_feed_server()
        self._bus.close_all()
        logger.info("Audio broadcaster stopped")

    async def set_enabled(self, enabled: bool) -> None:
        """
        Enable or disable the live audio feature.

        Disabling kills the encoder and closes every subscriber right away.
        """
        if enabled == self._enabled:
            return
        self._enabled = enabled

        if not enabled:
            encoder = self._encoder
            if encoder is not None:
                encoder.kill()
            self._bus.close_all()
            logger.info("Live audio disabled")
            return

        self.prime()
        if self._serve_feed and self._feed_task is None:
            await self._start_feed_server()
        if self._supervisor_task is None or self._supervisor_task.done():
            self._supervisor_task = asyncio.create_task(self._supervise())
        logger.info("Live audio enabled")

    def interrupt(self) -> None:
        """Kill the encoder so the supervisor restarts on the current track."""
        encoder = self._encoder
        if encoder is not None:
            logger.info("Interrupting audio encoder")
            encoder.kill()

    def skip(self) -> Optional[str]:
        """Advance the library and restart the encoder on the new track."""
        path = (
            self._library.try_consume_queue()
            or self._library.try_get_next_track()
            or self._library.try_select_random_track()
        )
        self.interrupt()
        return path

    def on_track_finished(self, callback: TrackFinishedCallback) -> None:
        """Register a callback run when a track ends, before the queue advances."""
        self._callbacks.append(callback)

    def prime(self) -> Optional[str]:
        """Make sure the library has a current track."""
        current = self._library.current_path
        if current:
            return current
        return (
            self._library.try_consume_queue()
            or self._library.try_get_next_track()
            or self._library.try_select_random_track()
        )

    def status(self) -> dict[str, Any]:
        state = self._library.get_state()
        return {
            **state.to_dict(),
            "enabled": self._enabled,
            "encoderRunning": self.is_encoder_running(),
            "subscribers": self._bus.subscriber_count(),
            "broadcastedBytes": self._bus.broadcasted_bytes(),
            "consecutiveFailures": self._consecutive_failures,
            "encoderStarts": self._restarts,
        }

    async def iter_feed(self) -> AsyncIterator[bytes]:
        """
        Stream the current track file.

        Ends when the file is exhausted or the library's current track
        changes, so the encoder reconnects and picks up the new one.
        """
        path = self._library.current_path
        if not path:
            await asyncio.sleep(FEED_WAIT_SECONDS)
            path = self._library.current_path
            if not path:
                return

        try:
            f = open(path, "rb")
        except OSError as e:
            logger.warning(f"Feed cannot open {path}: {e}")
            return

        try:
            with f:
                while self._library.current_path == path:
                    data = f.read(FEED_CHUNK_SIZE)
                    if not data:
                        break
                    yield data
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug(f"Feed client disconnected: {e}")

    async def _supervise(self) -> None:
        while True:
            try:
                if not self._enabled:
                    await asyncio.sleep(1.0)
                    continue

                path = self.prime()
                if not path:
                    await asyncio.sleep(1.0)
                    continue

                await self._run_encoder_once(path)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.critical(f"Audio supervisor error: {e}", exc_info=True)
                await asyncio.sleep(1.0)

    async def _run_encoder_once(self, path: str) -> None:
        encoder = EncoderProcess(
            "audio",
            read_size=self._read_size,
            stderr_tail_chars=self._stderr_tail_chars,
            stop_timeout=self._stop_timeout,
        )

        try:
            await encoder.start(self._command_builder(self.feed_url))
        except EncoderStartError as e:
            await self._record_failure(f"start failed: {e}")
            return

        self._encoder = encoder
        self._restarts += 1
        try:
            async for chunk in encoder.iter_chunks():
                if not self._enabled:
                    encoder.kill()
                    break
                self._bus.publish(chunk)
            result = await encoder.wait()
        except asyncio.CancelledError:
            await encoder.stop(self._stop_timeout)
            raise
        finally:
            if self._encoder is encoder:
                self._encoder = None

        if result.reason == ExitReason.KILLED:
            # Interrupt or disable, restart right away on the current track
            self._consecutive_failures = 0
            return

        if result.is_normal and result.runtime_seconds >= self._config.min_run_seconds:
            self._consecutive_failures = 0
            if self._library.current_path != path:
                # Track was switched under the encoder, the feed closed early
                return
            await self._handle_track_finished(path)
            return

        await self._record_failure(
            f"exit {result.return_code} after {result.runtime_seconds:.2f}s: "
            f"{result.stderr_tail[-300:].strip()}"
        )

    async def _handle_track_finished(self, path: str) -> None:
        self._tracks_finished += 1
        for callback in list(self._callbacks):
            try:
                outcome = callback(path)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Track finished callback failed: {e}")

        next_path = (
            self._library.try_consume_queue()
            or self._library.try_get_next_track()
            or self._library.try_select_random_track()
        )
        logger.info(f"Track finished, next: {next_path or '<none>'}")

    async def _record_failure(self, detail: str) -> None:
        self._consecutive_failures += 1
        delay = compute_backoff(
            self._consecutive_failures,
            self._config.backoff_base,
            self._config.backoff_max,
            self._config.backoff_jitter,
        )
        logger.warning(
            f"Audio encoder failure #{self._consecutive_failures} ({detail}), "
            f"retrying in {delay:.2f}s"
        )
        await asyncio.sleep(delay)

    def _default_command(self, feed_url: str) -> list[str]:
        return build_audio_encoder_args(feed_url, self._config.bitrate, self._ffmpeg_path)

    def _create_feed_app(self) -> FastAPI:
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

        @app.get("/feed/")
        async def feed() -> StreamingResponse:
            return StreamingResponse(self.iter_feed(), media_type="application/octet-stream")

        return app

    async def _start_feed_server(self) -> None:
        config = uvicorn.Config(
            self._create_feed_app(),
            host=self._config.feed_host,
            port=self._config.feed_port,
            log_level="warning",
            lifespan="off",
            access_log=False,
        )
        self._feed_server = FeedServer(config)
        self._feed_task = asyncio.create_task(self._feed_server.serve())
        logger.info(f"Audio feed listening on {self.feed_url}")

    async def _stop_feed_server(self) -> None:
        if self._feed_server is None or self._feed_task is None:
            return
        self._feed_server.should_exit = True
        try:
            await asyncio.wait_for(self._feed_task, timeout=5.0)
        except asyncio.TimeoutError:
            self._feed_task.cancel()
        except Exception as e:
            logger.warning(f"Feed server stopped with error: {e}")
        self._feed_server = None
        self._feed_task = None
