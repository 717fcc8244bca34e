"""
Print orchestrator.

Turns printer state transitions into time-lapse sessions and broadcast
starts/stops. Events are handled one at a time; each event runs the same
ordered passes:

1. job change detection (force finalize)
2. progress pass-through to the time-lapse store
3. last-layer early finalize (broadcast keeps running)
4. finalization with grace periods
5. start of a new session (and broadcast)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from printstreamer.broadcast.coordinator import BroadcastCoordinator
from printstreamer.broadcast.provider import BroadcastProvider
from printstreamer.config import PrintStreamerConfig, get_config
from printstreamer.printer.state import PrinterState
from printstreamer.timelapse.store import TimelapseStore
from printstreamer.utils.files import session_name_for_job

logger = logging.getLogger(__name__)

# Progress at which a finished-looking job is finalized without waiting
COMPLETE_PROGRESS_PERCENT = 99.0


def _same_job(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().lower() == (b or "").strip().lower()


@dataclass
class PrintSession:
    session_id: str
    job_filename: str
    last_layer_fired: bool = False


class PrintOrchestrator:
    """
    Drives time-lapse and broadcast lifecycles from printer state.

    Subscribe ``handle_state`` to a PrinterObserver:
        observer.subscribe(orchestrator.handle_state)
    """

    def __init__(
        self,
        coordinator: BroadcastCoordinator,
        timelapse: TimelapseStore,
        provider: Optional[BroadcastProvider] = None,
        config_source: Callable[[], PrintStreamerConfig] = get_config,
        clock: Callable[[], float] = time.monotonic,
        watchdog_interval: float = 15.0,
    ):
        self._coordinator = coordinator
        self._timelapse = timelapse
        self._provider = provider
        self._config_source = config_source
        self._clock = clock

        self._lock = asyncio.Lock()
        self._session: Optional[PrintSession] = None
        self._session_jobs: dict[str, str] = {}
        self._finalized_job: Optional[str] = None
        self._holding_logged = False

        self._last_state: Optional[PrinterState] = None
        self._last_info_seen_at: Optional[float] = None
        self._last_printing_seen_at: Optional[float] = None
        self._idle_since: Optional[float] = None
        self._job_missing_since: Optional[float] = None

        self._finalize_tasks: set[asyncio.Task] = set()
        self._watchdog: Optional[asyncio.Task] = None
        self._watchdog_interval = watchdog_interval

    @property
    def _config(self) -> PrintStreamerConfig:
        return self._config_source()

    @property
    def session_id(self) -> Optional[str]:
        return self._session.session_id if self._session else None

    @property
    def finalized_job(self) -> Optional[str]:
        return self._finalized_job

    def status(self) -> dict[str, Any]:
        now = self._clock()
        session = self._session
        return {
            "sessionId": session.session_id if session else None,
            "jobFilename": session.job_filename if session else None,
            "lastLayerFired": session.last_layer_fired if session else False,
            "finalizedJob": self._finalized_job,
            "pendingFinalizations": len(self._finalize_tasks),
            "idleSeconds": now - self._idle_since if self._idle_since is not None else None,
            "jobMissingSeconds": now - self._job_missing_since if self._job_missing_since is not None else None,
            "printerState": self._last_state.to_dict() if self._last_state else None,
        }

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start the grace-period watchdog."""
        if self._watchdog is None or self._watchdog.done():
            self._watchdog = asyncio.create_task(self._watchdog_loop())

    async def stop(self, drain_timeout: Optional[float] = 30.0) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            try:
                await self._watchdog
            except asyncio.CancelledError:
                pass
            self._watchdog = None
        await self.drain(drain_timeout)

    async def _watchdog_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._watchdog_interval)
                await self.check_grace_periods()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.critical(f"Orchestrator watchdog crashed: {e}", exc_info=True)

    async def check_grace_periods(self) -> None:
        """
        Re-evaluate finalization without a new snapshot.

        Offline detection relies on this: an unreachable printer produces
        no events.
        """
        async with self._lock:
            state = self._last_state
            if state is None or (self._session is None and not self._coordinator.is_broadcast_active):
                return
            if not (state.is_done or state.is_active):
                return
            try:
                await self._evaluate_finalization(state, force_finalize=False)
            except Exception as e:
                logger.error(f"Error checking grace periods: {e}", exc_info=True)

    # ==================== Event Handling ====================

    async def handle_state(self, previous: Optional[PrinterState], current: PrinterState) -> None:
        """Process one printer snapshot. Never raises."""
        async with self._lock:
            try:
                await self._handle(current)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error handling printer state: {e}", exc_info=True)

    async def _handle(self, current: PrinterState) -> None:
        now = self._clock()
        active = current.is_active
        was_active = self._last_state is not None and self._last_state.is_active

        logger.debug(
            f"Printer state {current.state.value}, job {current.filename or '(none)'}, "
            f"progress {current.progress_percent if current.progress_percent is not None else 'n/a'}"
        )

        self._last_state = current
        self._last_info_seen_at = now
        if active:
            self._last_printing_seen_at = now
            self._idle_since = None
            if not was_active:
                self._holding_logged = False
        elif current.is_done and self._idle_since is None:
            self._idle_since = now

        # A different job clears the finalized marker
        if (
            self._finalized_job is not None
            and current.filename
            and not _same_job(current.filename, self._finalized_job)
        ):
            logger.debug(f"New job {current.filename} seen, clearing finalized marker")
            self._finalized_job = None

        session = self._session
        if session is not None:
            if current.filename:
                self._job_missing_since = None
                if not session.job_filename:
                    session.job_filename = current.filename
                    self._session_jobs[session.session_id] = current.filename
            elif self._job_missing_since is None:
                self._job_missing_since = now
        else:
            self._job_missing_since = None

        # 1. Job change
        force_finalize = (
            active
            and session is not None
            and bool(current.filename)
            and bool(session.job_filename)
            and not _same_job(current.filename, session.job_filename)
        )
        if force_finalize:
            logger.info(
                f"Job changed while time-lapse active: {session.job_filename} -> {current.filename}, "
                f"finalizing {session.session_id}"
            )

        # 2. Progress
        if session is not None:
            await self._notify_timelapse(session.session_id, current)

        # 3. Last layer
        if not force_finalize:
            self._check_last_layer(current)

        # 4. Finalization
        if force_finalize or current.is_done or (active and self._session is None):
            await self._evaluate_finalization(current, force_finalize)

        # 5. Start; after a forced finalize the new job starts on the same event
        if active and self._session is None:
            await self._start_session(current)

    def _is_last_layer(self, state: PrinterState) -> bool:
        config = self._config.print
        by_time = (
            state.remaining is not None
            and state.remaining.total_seconds() <= config.last_layer_remaining_seconds
        )
        by_progress = (
            state.progress_percent is not None
            and state.progress_percent >= config.last_layer_progress_percent
        )
        by_layer = (
            state.current_layer is not None
            and state.total_layers is not None
            and state.total_layers > 0
            and state.current_layer >= state.total_layers - config.last_layer_offset
        )
        return by_time or by_progress or by_layer

    def _check_last_layer(self, state: PrinterState) -> Optional[str]:
        """Detach the session and finalize it in the background. Returns the session id when fired."""
        session = self._session
        if not state.is_active or session is None or session.last_layer_fired:
            return None
        if not self._is_last_layer(state):
            return None

        session.last_layer_fired = True
        logger.info(f"Last layer detected, finalizing time-lapse {session.session_id} in background")
        self._detach_and_finalize(session)
        return session.session_id

    def _detach_and_finalize(self, session: PrintSession) -> asyncio.Task:
        self._finalized_job = session.job_filename
        self._session_jobs.pop(session.session_id, None)
        if self._session is session:
            self._session = None
        task = asyncio.create_task(self._finalize_session(session.session_id, session.job_filename))
        self._finalize_tasks.add(task)
        task.add_done_callback(self._finalize_tasks.discard)
        return task

    async def _evaluate_finalization(self, state: PrinterState, force_finalize: bool) -> None:
        now = self._clock()
        config = self._config.print
        grace = config.offline_grace_seconds

        layers_complete = (
            state.current_layer is not None
            and state.total_layers is not None
            and state.total_layers > 0
            and state.current_layer >= max(0, state.total_layers - config.last_layer_offset)
        )
        progress_complete = (
            state.progress_percent is not None and state.progress_percent >= COMPLETE_PROGRESS_PERCENT
        )
        idle_met = self._idle_since is not None and now - self._idle_since >= config.idle_finalize_delay_seconds
        job_missing_met = self._job_missing_since is not None and now - self._job_missing_since >= grace
        offline_met = (
            self._last_printing_seen_at is not None
            and now - self._last_printing_seen_at >= grace
            and self._last_info_seen_at is not None
            and now - self._last_info_seen_at >= grace
        )

        # Layer and progress only count once the printer has left the active states
        completion_met = not state.is_active and (layers_complete or progress_complete)
        should_finalize = force_finalize or completion_met or idle_met or job_missing_met or offline_met

        if not should_finalize:
            if not self._holding_logged:
                idle_for = f"{now - self._idle_since:.0f}s" if self._idle_since is not None else "n/a"
                logger.info(
                    f"Holding (state={state.state.value}, progress={state.progress_percent}, idle={idle_for})"
                )
                self._holding_logged = True
            return

        self._holding_logged = False
        session = self._session
        if force_finalize and session is not None:
            label = session.job_filename
        else:
            label = state.filename or (session.job_filename if session else "") or "(unknown)"

        if force_finalize:
            logger.info(f"Finalizing time-lapse before new job: {label}")
        else:
            logger.info(f"Print finished: {label}")
            if self._coordinator.is_broadcast_active:
                if config.end_stream_after_print:
                    result = await self._coordinator.stop_broadcast()
                    if result.ok:
                        logger.info("Broadcast stopped after print")
                    else:
                        logger.warning(f"Error stopping broadcast: {result.message}")
                else:
                    logger.info("Leaving broadcast running (end_stream_after_print disabled)")

        session = self._session
        if session is not None:
            await asyncio.shield(self._detach_and_finalize(session))
        elif state.filename:
            orphans = [sid for sid, job in self._session_jobs.items() if _same_job(job, state.filename)]
            for session_id in orphans:
                await asyncio.shield(self._detach_and_finalize(PrintSession(session_id, self._session_jobs[session_id])))

        self._session = None
        self._job_missing_since = None
        self._idle_since = None
        self._last_printing_seen_at = None
        self._last_info_seen_at = None
        if state.is_done:
            # The job is over; printing the same file again is a new job
            self._finalized_job = None

    async def _start_session(self, state: PrinterState) -> None:
        if self._finalized_job is not None and _same_job(state.filename, self._finalized_job):
            logger.debug(f"Time-lapse already finalized for {state.filename}, not starting a new one")
            return

        name = session_name_for_job(state.filename)
        logger.info(f"Print started: {state.filename or '(unknown)'}")

        try:
            session_id = await self._timelapse.start_session(name, state.filename)
        except Exception as e:
            logger.error(f"Failed to start time-lapse session {name}: {e}")
            return

        session = PrintSession(session_id, state.filename)
        self._session = session
        self._session_jobs[session_id] = state.filename
        self._job_missing_since = None
        logger.info(f"Time-lapse session started: {session_id}")

        await self._notify_timelapse(session_id, state)

        if self._is_last_layer(state):
            # Started at the end of a job, nothing left to capture
            logger.info(f"Already at last layer, finalizing {session_id} now")
            await asyncio.shield(self._detach_and_finalize(session))
            return

        config = self._config
        if not config.print.auto_broadcast:
            logger.info("Auto-broadcast disabled, not starting broadcast")
            return
        if self._coordinator.is_broadcast_active:
            return

        context_key = config.reuse.context_key or name
        result = await self._coordinator.start_broadcast(context_key=context_key)
        if result.ok:
            logger.info(f"Broadcast started: {result.broadcast_id}")
        else:
            logger.warning(f"Failed to start broadcast: {result.message}")

    async def _notify_timelapse(self, session_id: str, state: PrinterState) -> None:
        try:
            await self._timelapse.notify_progress(session_id, state.current_layer, state.total_layers)
            await self._timelapse.notify_state(session_id, state.state)
        except Exception as e:
            logger.error(f"Failed to notify time-lapse of progress: {e}")

    # ==================== Session Finalize ====================

    async def _finalize_session(self, session_id: str, job_filename: str) -> Optional[str]:
        """Stop the time-lapse and publish the video. Steps fail independently."""
        config = self._config
        video_path = None
        try:
            logger.info(f"Stopping time-lapse {session_id}")
            video_path = await self._timelapse.stop_session(session_id)
        except Exception as e:
            logger.error(f"Failed to stop time-lapse {session_id}: {e}")

        if not video_path:
            return None
        logger.info(f"Time-lapse video created: {video_path}")

        if not config.print.upload_timelapse or self._provider is None:
            return None

        video_id = None
        title = f"{session_name_for_job(job_filename) if job_filename else session_id} timelapse"
        try:
            video_id = await self._provider.upload_video(video_path, title, config.youtube.description)
        except Exception as e:
            logger.error(f"Time-lapse upload failed for {session_id}: {e}")
        if not video_id:
            return None
        logger.info(f"Time-lapse uploaded as {video_id}")

        try:
            frame = self._timelapse.last_frame(session_id)
            if frame:
                await self._provider.set_thumbnail(video_id, frame)
        except Exception as e:
            logger.warning(f"Could not set thumbnail for {video_id}: {e}")

        playlist = config.youtube.playlist_name
        if playlist:
            try:
                playlist_id = await self._provider.ensure_playlist(playlist, config.youtube.playlist_privacy)
                if playlist_id:
                    await self._provider.add_to_playlist(playlist_id, video_id)
            except Exception as e:
                logger.warning(f"Could not add {video_id} to playlist: {e}")

        return video_id

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for background finalizations."""
        if not self._finalize_tasks:
            return
        done, pending = await asyncio.wait(list(self._finalize_tasks), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} time-lapse finalizations still running")
