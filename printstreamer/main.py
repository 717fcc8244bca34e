"""
PrintStreamer Main Application

FastAPI application entry point wiring the audio station, the broadcast
coordinator and the print-driven orchestrator together.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from printstreamer import __version__
from printstreamer.config import load_config

# Logger
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown tasks:
    - Load configuration
    - Start the audio library, bus and broadcaster
    - Authenticate the broadcast provider
    - Start the printer observer, console queue and orchestrator
    """
    # Startup
    logger.info(f"Starting PrintStreamer v{__version__}")

    config = load_config()
    logger.info(f"Configuration loaded, server port: {config.server.port}")

    from printstreamer.audio.library import AudioLibrary
    from printstreamer.broadcast.coordinator import BroadcastCoordinator
    from printstreamer.broadcast.reuse import BroadcastReuseManager, BroadcastStore
    from printstreamer.broadcast.token_store import TokenStore
    from printstreamer.broadcast.youtube import YouTubeProvider
    from printstreamer.printer.command_queue import CommandQueue
    from printstreamer.printer.moonraker import MoonrakerClient, PrinterObserver
    from printstreamer.printer.orchestrator import PrintOrchestrator
    from printstreamer.streaming.audio_broadcaster import AudioBroadcaster
    from printstreamer.streaming.audio_bus import AudioBus
    from printstreamer.timelapse.store import FileTimelapseStore

    # Audio station
    library = AudioLibrary(config.audio.folder)
    try:
        count = library.rescan()
        logger.info(f"Audio library loaded: {count} tracks from {library.folder}")
    except Exception as e:
        logger.warning(f"Audio library scan failed (non-critical): {e}")
    app.state.audio_library = library

    bus = AudioBus(capacity=config.audio.subscriber_buffer)
    app.state.audio_bus = bus

    broadcaster = AudioBroadcaster(
        library,
        bus,
        config.audio,
        ffmpeg_path=config.ffmpeg.path,
        read_size=config.ffmpeg.read_size,
        stderr_tail_chars=config.ffmpeg.stderr_tail_chars,
        stop_timeout=config.ffmpeg.stop_timeout,
    )
    app.state.audio_broadcaster = broadcaster
    try:
        await broadcaster.start()
        logger.info("Audio broadcaster started")
    except Exception as e:
        logger.warning(f"Audio broadcaster failed to start: {e}")

    # Broadcast provider
    provider = None
    if config.youtube.client_id:
        provider = YouTubeProvider(config.youtube, TokenStore(config.youtube.token_file))
        if await provider.authenticate():
            logger.info("YouTube provider authenticated")
        else:
            logger.warning("YouTube provider not authenticated; broadcasts will fail until a token is stored")
        await provider.start_refresh_loop()
    else:
        logger.info("No YouTube client configured; remote broadcasts disabled")
    app.state.provider = provider

    reuse_manager = None
    if provider is not None:
        reuse_manager = BroadcastReuseManager(provider, BroadcastStore(config.reuse.store_file), config.reuse)

    coordinator = BroadcastCoordinator(provider=provider, reuse_manager=reuse_manager)
    broadcaster.on_track_finished(coordinator.on_audio_track_finished)
    app.state.coordinator = coordinator

    # Printer
    client = MoonrakerClient(config.moonraker)
    app.state.moonraker_client = client

    observer = PrinterObserver(client, poll_interval=config.moonraker.poll_interval_seconds)
    app.state.printer_observer = observer

    command_queue = CommandQueue(client.send_gcode, config.moonraker)
    await command_queue.start()
    app.state.command_queue = command_queue

    timelapse = FileTimelapseStore(config.timelapse, ffmpeg_path=config.ffmpeg.path)
    app.state.timelapse = timelapse

    orchestrator = PrintOrchestrator(coordinator, timelapse, provider=provider)
    observer.subscribe(orchestrator.handle_state)
    await orchestrator.start()
    app.state.orchestrator = orchestrator

    try:
        await observer.start()
        logger.info(f"Printer observer started for {config.moonraker.base_url}")
    except Exception as e:
        logger.warning(f"Printer observer failed to start: {e}")

    yield

    # Shutdown
    logger.info("Shutting down PrintStreamer")

    if hasattr(app.state, "printer_observer"):
        try:
            await app.state.printer_observer.stop()
            logger.info("Printer observer stopped")
        except Exception as e:
            logger.warning(f"Error stopping printer observer: {e}")

    if hasattr(app.state, "orchestrator"):
        try:
            await app.state.orchestrator.stop()
            logger.info("Print orchestrator stopped")
        except Exception as e:
            logger.warning(f"Error stopping print orchestrator: {e}")

    if hasattr(app.state, "coordinator"):
        try:
            await app.state.coordinator.shutdown()
            logger.info("Broadcast coordinator stopped")
        except Exception as e:
            logger.warning(f"Error stopping broadcast coordinator: {e}")

    if hasattr(app.state, "timelapse"):
        try:
            await app.state.timelapse.close()
            logger.info("Timelapse store closed")
        except Exception as e:
            logger.warning(f"Error closing timelapse store: {e}")

    if hasattr(app.state, "command_queue"):
        try:
            await app.state.command_queue.stop()
            logger.info("Command queue stopped")
        except Exception as e:
            logger.warning(f"Error stopping command queue: {e}")

    if hasattr(app.state, "moonraker_client"):
        try:
            await app.state.moonraker_client.close()
        except Exception as e:
            logger.warning(f"Error closing Moonraker client: {e}")

    if hasattr(app.state, "audio_broadcaster"):
        try:
            await app.state.audio_broadcaster.stop()
            logger.info("Audio broadcaster stopped")
        except Exception as e:
            logger.warning(f"Error stopping audio broadcaster: {e}")

    if getattr(app.state, "provider", None) is not None:
        try:
            await app.state.provider.close()
        except Exception as e:
            logger.warning(f"Error closing broadcast provider: {e}")

    logger.info("PrintStreamer shutdown complete")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="PrintStreamer",
        description="Headless live streaming agent for 3D printers",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Register API routers
    from printstreamer.api import api_router, health_router, stream_router

    app.include_router(api_router)
    app.include_router(health_router)

    # Live audio lives at the root for external encoders and players
    app.include_router(stream_router)

    return app


# Create the application instance
app = create_app()


def main() -> None:
    """
    Main entry point for running the server.

    Called when running `python -m printstreamer` or via the CLI.
    """
    import uvicorn

    from printstreamer.utils.logging_setup import parse_size, setup_logging

    config = load_config()

    setup_logging(
        log_level=config.logging.level,
        log_file_name=config.logging.file,
        log_to_console=True,
        log_to_file=bool(config.logging.file),
        max_bytes=parse_size(config.logging.max_size),
        backup_count=config.logging.backup_count,
        log_format=config.logging.format,
    )

    logger.info(f"Starting PrintStreamer v{__version__}")

    uvicorn.run(
        "printstreamer.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.debug,
        log_level=config.server.log_level.lower(),
    )


if __name__ == "__main__":
    main()
