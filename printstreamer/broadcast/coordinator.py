"""
Broadcast coordinator.

Owns at most one video streamer and at most one remote broadcast. Start,
stop and restart are serialized by a single lock and never raise to the
caller; they return a BroadcastResult. A background readiness loop per
broadcast waits for ingestion and moves the broadcast to live.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from printstreamer.broadcast.provider import BroadcastProvider
from printstreamer.broadcast.reuse import BroadcastReuseManager
from printstreamer.config import PrintStreamerConfig, get_config
from printstreamer.ffmpeg.commands import (
    OverlaySettings,
    VideoStreamSettings,
    build_rtmp_url,
)
from printstreamer.ffmpeg.process import ExitReason
from printstreamer.streaming.error_handler import (
    AuthenticationError,
    EncoderStartError,
    ErrorClassifier,
    ErrorKind,
    compute_backoff,
)
from printstreamer.streaming.video_streamer import VideoStreamer
from printstreamer.utils.logging_setup import mask_secret

logger = logging.getLogger(__name__)

StreamerFactory = Callable[[VideoStreamSettings], VideoStreamer]

# A streamer that ran at least this long resets the failure streak
STABLE_RUN_SECONDS = 30.0


@dataclass
class BroadcastResult:
    """Outcome of a coordinator operation."""

    ok: bool
    message: str = ""
    broadcast_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "message": self.message, "broadcastId": self.broadcast_id}


class _TransitionOutcome(str, Enum):
    LIVE = "live"
    RETRY = "retry"
    FATAL = "fatal"


class BroadcastCoordinator:
    """
    Process-wide owner of the streamer and the current broadcast.

    Usage:
        coordinator = BroadcastCoordinator(provider, reuse_manager)
        result = await coordinator.start_broadcast(context_key="part")
        ...
        await coordinator.stop_broadcast()
    """

    def __init__(
        self,
        provider: Optional[BroadcastProvider] = None,
        reuse_manager: Optional[BroadcastReuseManager] = None,
        config_source: Callable[[], PrintStreamerConfig] = get_config,
        streamer_factory: Optional[StreamerFactory] = None,
        lock_wait_seconds: float = 60.0,
        playlist_delay_seconds: float = 2.0,
    ):
        self._provider = provider
        self._reuse_manager = reuse_manager
        self._config_source = config_source
        self._streamer_factory = streamer_factory or self._default_streamer
        self._lock_wait_seconds = lock_wait_seconds
        self._playlist_delay_seconds = playlist_delay_seconds

        self._lock = asyncio.Lock()

        # Current session, replaced only while holding the lock
        self._streamer: Optional[VideoStreamer] = None
        self._streamer_task: Optional[asyncio.Task] = None
        self._streamer_settings: Optional[VideoStreamSettings] = None
        self._broadcast_id: Optional[str] = None
        self._stream_id: Optional[str] = None
        self._rtmp_url: Optional[str] = None
        self._active_provider: Optional[BroadcastProvider] = None
        self._readiness_task: Optional[asyncio.Task] = None

        self._waiting_for_ingestion = False
        self._is_live = False
        self._background: set[asyncio.Task] = set()

        self.end_stream_after_song = self._config.stream.end_stream_after_song

    @property
    def _config(self) -> PrintStreamerConfig:
        return self._config_source()

    @property
    def provider(self) -> Optional[BroadcastProvider]:
        return self._provider

    @property
    def broadcast_id(self) -> Optional[str]:
        return self._broadcast_id

    @property
    def is_broadcast_active(self) -> bool:
        return self._broadcast_id is not None

    @property
    def is_streamer_running(self) -> bool:
        streamer = self._streamer
        return streamer is not None and streamer.is_running()

    @property
    def is_waiting_for_ingestion(self) -> bool:
        return self._waiting_for_ingestion

    @property
    def is_live(self) -> bool:
        return self._is_live

    def status(self) -> dict[str, Any]:
        settings = self._streamer_settings
        return {
            "isStreamerRunning": self.is_streamer_running,
            "isBroadcastActive": self.is_broadcast_active,
            "isWaitingForIngestion": self.is_waiting_for_ingestion,
            "isLive": self._is_live,
            "broadcastId": self._broadcast_id,
            "target": settings.target.value if settings else None,
            "endStreamAfterSong": self.end_stream_after_song,
        }

    # ==================== Broadcast Lifecycle ====================

    async def start_broadcast(
        self,
        context_key: Optional[str] = None,
        title: Optional[str] = None,
    ) -> BroadcastResult:
        """
        Create (or reuse) a broadcast and point the streamer at it.

        A concurrent call waits for the first one and then returns the same
        broadcast id.
        """
        if not await self._acquire():
            return BroadcastResult(False, "Another broadcast operation is in progress", self._broadcast_id)
        try:
            if self._broadcast_id is not None:
                return BroadcastResult(True, "Broadcast already active", self._broadcast_id)

            provider = self._provider
            if provider is None:
                return BroadcastResult(False, "No broadcast provider configured")

            yt = self._config.youtube
            title = title or yt.title

            if not await provider.authenticate():
                return BroadcastResult(False, "Authentication failed")

            if self._reuse_manager is not None and context_key:
                info = await self._reuse_manager.get_or_create_broadcast(
                    title, context_key, yt.description, yt.privacy, yt.category_id
                )
            else:
                info = await provider.create_broadcast(title, yt.description, yt.privacy, yt.category_id)

            if not info.rtmp_url or not info.stream_key:
                return BroadcastResult(False, "Provider returned no ingestion address", info.broadcast_id)

            await self._stop_streamer_locked()

            rtmp_url = build_rtmp_url(info.rtmp_url, info.stream_key)
            logger.info(
                f"Starting broadcast {info.broadcast_id} to {info.rtmp_url}/{mask_secret(info.stream_key)}"
            )
            await self._launch_streamer_locked(self._build_settings(rtmp_url))

            self._broadcast_id = info.broadcast_id
            self._stream_id = info.stream_id
            self._rtmp_url = rtmp_url
            self._active_provider = provider
            self._is_live = False
            self._readiness_task = asyncio.create_task(
                self._readiness_loop(provider, info.broadcast_id, info.stream_id)
            )

            return BroadcastResult(True, "Broadcast started", info.broadcast_id)

        except AuthenticationError as e:
            logger.warning(f"Broadcast start failed, authentication: {e}")
            return BroadcastResult(False, f"Authentication failed: {e}")
        except Exception as e:
            logger.error(f"Broadcast start failed: {e}")
            return BroadcastResult(False, str(e))
        finally:
            self._lock.release()

    async def stop_broadcast(self, keep_local: bool = False) -> BroadcastResult:
        """
        Stop the streamer and end the remote broadcast.

        With ``keep_local`` a local preview stream is started afterwards.
        """
        if not await self._acquire():
            return BroadcastResult(False, "Another broadcast operation is in progress", self._broadcast_id)
        try:
            broadcast_id = self._broadcast_id
            provider = self._active_provider
            readiness = self._readiness_task

            self._broadcast_id = None
            self._stream_id = None
            self._rtmp_url = None
            self._active_provider = None
            self._readiness_task = None
            self._is_live = False
            self._waiting_for_ingestion = False

            if readiness is not None:
                readiness.cancel()
                try:
                    await readiness
                except asyncio.CancelledError:
                    pass

            await self._stop_streamer_locked()

            if broadcast_id and provider is not None:
                try:
                    ended = await provider.end_broadcast(broadcast_id)
                except Exception as e:
                    ended = False
                    logger.warning(f"Failed to end broadcast {broadcast_id}: {e}")
                if ended and self._reuse_manager is not None:
                    self._reuse_manager.forget(broadcast_id)

                playlist = self._config.youtube.playlist_name
                if playlist:
                    self._spawn(self._add_to_playlist_later(provider, broadcast_id, playlist))

            if keep_local:
                await self._start_local_locked()

            message = "Broadcast stopped" if broadcast_id else "No active broadcast"
            return BroadcastResult(True, message, broadcast_id)

        except Exception as e:
            logger.error(f"Broadcast stop failed: {e}")
            return BroadcastResult(False, str(e))
        finally:
            self._lock.release()

    async def stop_broadcast_keep_local(self) -> BroadcastResult:
        """End the broadcast but keep a local preview stream running."""
        return await self.stop_broadcast(keep_local=True)

    async def start_local_stream(self) -> BroadcastResult:
        """Run the streamer against the local preview only."""
        if not await self._acquire():
            return BroadcastResult(False, "Another broadcast operation is in progress")
        try:
            if self.is_streamer_running:
                return BroadcastResult(True, "Streamer already running", self._broadcast_id)
            return await self._start_local_locked()
        except Exception as e:
            logger.error(f"Local stream start failed: {e}")
            return BroadcastResult(False, str(e))
        finally:
            self._lock.release()

    async def restart_streamer_with_config(self) -> BroadcastResult:
        """
        Restart the streamer with the current configuration.

        The remote broadcast is kept; the restart runs in a detached task.
        """
        self._spawn(self._restart_streamer())
        return BroadcastResult(True, "Streamer restart scheduled", self._broadcast_id)

    def interrupt_streamer(self) -> bool:
        """Force-kill the encoder; the streamer supervisor brings it back."""
        streamer = self._streamer
        if streamer is None:
            return False
        logger.info("Interrupting video streamer")
        streamer.kill()
        return True

    async def ensure_streaming_healthy(self) -> BroadcastResult:
        """
        Restart the streamer for the active broadcast and check ingestion.

        If ingestion does not come back, the broadcast is stopped and a
        local stream is kept running.
        """
        if not self.is_broadcast_active:
            if self.is_streamer_running:
                return BroadcastResult(True, "Local stream running")
            return await self.start_local_stream()

        await self._restart_streamer()
        provider = self._active_provider
        if provider is None:
            return BroadcastResult(False, "No active provider")

        timeout = self._config.youtube.ingestion_wait_seconds
        try:
            active = await provider.wait_for_ingestion(self._stream_id, timeout)
        except Exception as e:
            logger.warning(f"Ingestion check failed: {e}")
            active = False

        if active:
            return BroadcastResult(True, "Streaming healthy", self._broadcast_id)

        logger.warning("Ingestion did not recover, stopping broadcast and keeping local stream")
        result = await self.stop_broadcast_keep_local()
        return BroadcastResult(False, "Ingestion not active, broadcast stopped", result.broadcast_id)

    async def on_audio_track_finished(self, path: Optional[str] = None) -> None:
        """Stop the broadcast after the current song when requested."""
        if not self.end_stream_after_song or not self.is_broadcast_active:
            return
        self.end_stream_after_song = False
        logger.info("Song finished, ending broadcast as requested")
        await self.stop_broadcast()

    async def shutdown(self) -> None:
        """Stop background work and the streamer without ending the remote broadcast."""
        async with self._lock:
            if self._readiness_task is not None:
                self._readiness_task.cancel()
                try:
                    await self._readiness_task
                except asyncio.CancelledError:
                    pass
                self._readiness_task = None
            await self._stop_streamer_locked()

        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("Broadcast coordinator shut down")

    async def drain_background(self) -> None:
        """Wait for detached tasks such as playlist updates."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ==================== Readiness Loop ====================

    async def _readiness_loop(
        self,
        provider: BroadcastProvider,
        broadcast_id: str,
        stream_id: Optional[str],
    ) -> None:
        yt = self._config.youtube
        try:
            while self._broadcast_id == broadcast_id:
                outcome = await self._try_transition(provider, broadcast_id)
                if outcome != _TransitionOutcome.RETRY:
                    return

                self._waiting_for_ingestion = True
                try:
                    active = await provider.wait_for_ingestion(stream_id, yt.ingestion_wait_seconds)
                except Exception as e:
                    stream_error = ErrorClassifier.classify(e)
                    if stream_error.kind in (ErrorKind.REMOTE_FATAL, ErrorKind.AUTH_FAILED):
                        logger.error(f"Ingestion wait failed for {broadcast_id}: {e}")
                        return
                    logger.warning(f"Ingestion wait error for {broadcast_id}: {e}")
                    active = False
                finally:
                    self._waiting_for_ingestion = False

                if self._broadcast_id != broadcast_id:
                    return

                if active:
                    logger.info(f"Ingestion active for {broadcast_id}, going live")
                    for attempt in range(1, yt.transition_attempts + 1):
                        outcome = await self._try_transition(provider, broadcast_id)
                        if outcome != _TransitionOutcome.RETRY:
                            return
                        await asyncio.sleep(
                            compute_backoff(attempt, yt.transition_backoff_base, yt.transition_backoff_max)
                        )
                else:
                    logger.info(f"Ingestion not active yet for {broadcast_id}")

                await asyncio.sleep(yt.retry_seconds)

        except asyncio.CancelledError:
            logger.debug(f"Readiness loop for {broadcast_id} cancelled")
        except Exception as e:
            logger.critical(f"Readiness loop for {broadcast_id} crashed: {e}", exc_info=True)
        finally:
            self._waiting_for_ingestion = False

    async def _try_transition(self, provider: BroadcastProvider, broadcast_id: str) -> _TransitionOutcome:
        try:
            if await provider.transition_to_live(broadcast_id):
                if self._broadcast_id == broadcast_id:
                    self._is_live = True
                logger.info(f"Broadcast {broadcast_id} is live")
                return _TransitionOutcome.LIVE
            return _TransitionOutcome.RETRY
        except asyncio.CancelledError:
            raise
        except Exception as e:
            stream_error = ErrorClassifier.classify(e, {"broadcast_id": broadcast_id})
            if stream_error.kind in (ErrorKind.REMOTE_FATAL, ErrorKind.AUTH_FAILED):
                logger.error(f"Transition to live failed for {broadcast_id}: {e}")
                return _TransitionOutcome.FATAL
            logger.info(f"Transition to live not possible yet ({stream_error.kind.value}): {e}")
            return _TransitionOutcome.RETRY

    # ==================== Streamer Management ====================

    async def _acquire(self) -> bool:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self._lock_wait_seconds)
            return True
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for broadcast lock")
            return False

    async def _start_local_locked(self) -> BroadcastResult:
        preview_url = self._config.stream.local_preview_url
        if not preview_url:
            return BroadcastResult(False, "No local preview destination configured")
        await self._stop_streamer_locked()
        await self._launch_streamer_locked(self._build_settings(rtmp_url=None))
        return BroadcastResult(True, "Local stream started")

    async def _restart_streamer(self) -> None:
        async with self._lock:
            await self._stop_streamer_locked(timeout=2.0)
            if self._rtmp_url:
                settings = self._build_settings(self._rtmp_url)
            elif self._config.stream.local_preview_url:
                settings = self._build_settings(rtmp_url=None)
            else:
                logger.info("Nothing to restart, no broadcast and no local preview")
                return
            await self._launch_streamer_locked(settings)

    async def _launch_streamer_locked(self, settings: VideoStreamSettings) -> None:
        streamer: Optional[VideoStreamer] = self._streamer_factory(settings)
        try:
            await streamer.start()
        except EncoderStartError as e:
            logger.error(f"Video streamer failed to start: {e}")
            streamer = None

        self._streamer = streamer
        self._streamer_settings = settings
        self._streamer_task = asyncio.create_task(self._supervise_streamer(settings, streamer))

    async def _stop_streamer_locked(self, timeout: Optional[float] = None) -> None:
        task = self._streamer_task
        streamer = self._streamer
        self._streamer_task = None
        self._streamer = None
        self._streamer_settings = None

        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if streamer is not None and streamer.is_running():
            await streamer.stop(timeout if timeout is not None else self._config.ffmpeg.stop_timeout)

    async def _supervise_streamer(
        self,
        settings: VideoStreamSettings,
        streamer: Optional[VideoStreamer],
    ) -> None:
        audio = self._config.audio
        stop_timeout = self._config.ffmpeg.stop_timeout
        failures = 1 if streamer is None else 0

        try:
            while True:
                if streamer is None:
                    delay = compute_backoff(failures, audio.backoff_base, audio.backoff_max, audio.backoff_jitter)
                    await asyncio.sleep(delay)
                    streamer = self._streamer_factory(settings)
                    try:
                        await streamer.start()
                    except EncoderStartError as e:
                        failures += 1
                        logger.warning(f"Video streamer restart failed (#{failures}): {e}")
                        streamer = None
                        continue
                    self._streamer = streamer

                started = time.monotonic()
                result = await streamer.wait()
                ran_for = time.monotonic() - started

                if result.reason == ExitReason.KILLED:
                    # Interrupted, come back immediately
                    failures = 0
                    streamer = self._streamer_factory(settings)
                    try:
                        await streamer.start()
                        self._streamer = streamer
                    except EncoderStartError as e:
                        failures = 1
                        logger.warning(f"Video streamer restart failed: {e}")
                        streamer = None
                    continue

                failures = 1 if ran_for >= STABLE_RUN_SECONDS else failures + 1
                logger.warning(
                    f"Video streamer exited ({result.reason.value}, code {result.return_code}) "
                    f"after {ran_for:.1f}s: {result.stderr_tail[-300:].strip()}"
                )
                streamer = None

        except asyncio.CancelledError:
            if streamer is not None:
                await streamer.stop(stop_timeout)
            raise
        except Exception as e:
            logger.critical(f"Video streamer supervisor crashed: {e}", exc_info=True)

    def _build_settings(self, rtmp_url: Optional[str]) -> VideoStreamSettings:
        config = self._config
        stream = config.stream

        audio_url = None
        if stream.use_audio and config.audio.enabled:
            audio_url = stream.audio_url or f"http://127.0.0.1:{config.server.port}/stream/audio"

        overlay = None
        if stream.overlay_enabled and stream.overlay_text_file:
            overlay = OverlaySettings(
                text_file=stream.overlay_text_file,
                font_file=stream.overlay_font_file,
                font_size=stream.overlay_font_size,
                draw_box=stream.overlay_box,
            )

        return VideoStreamSettings(
            source_url=stream.source_url,
            audio_url=audio_url,
            fps=stream.fps,
            bitrate_kbps=stream.bitrate_kbps,
            width=stream.width,
            height=stream.height,
            overlay=overlay,
            rtmp_url=rtmp_url,
            preview_url=stream.local_preview_url,
        )

    def _default_streamer(self, settings: VideoStreamSettings) -> VideoStreamer:
        ffmpeg = self._config.ffmpeg
        return VideoStreamer(
            settings,
            ffmpeg_path=ffmpeg.path,
            stop_timeout=ffmpeg.stop_timeout,
            stderr_tail_chars=ffmpeg.stderr_tail_chars,
        )

    async def _add_to_playlist_later(
        self,
        provider: BroadcastProvider,
        broadcast_id: str,
        playlist_name: str,
    ) -> None:
        await asyncio.sleep(self._playlist_delay_seconds)
        try:
            playlist_id = await provider.ensure_playlist(playlist_name, self._config.youtube.playlist_privacy)
            if playlist_id:
                await provider.add_to_playlist(playlist_id, broadcast_id)
                logger.info(f"Added broadcast {broadcast_id} to playlist '{playlist_name}'")
        except Exception as e:
            logger.warning(f"Could not add broadcast {broadcast_id} to playlist: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
