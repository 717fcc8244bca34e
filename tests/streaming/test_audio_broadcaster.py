"""
Audio Broadcaster Tests

The encoder is replaced by Python children that write bytes to stdout, and
the internal feed listener is not started.
"""

import asyncio
import sys
from pathlib import Path

import pytest

from printstreamer.audio.library import AudioLibrary
from printstreamer.config import AudioConfig
from printstreamer.streaming.audio_broadcaster import AudioBroadcaster
from printstreamer.streaming.audio_bus import AudioBus
from tests.fixtures import eventually


def _writer(payload: bytes, linger: float) -> list[str]:
    code = f"import sys, time; sys.stdout.buffer.write({payload!r}); sys.stdout.flush(); time.sleep({linger})"
    return [sys.executable, "-c", code]


def _audio_config(**overrides) -> AudioConfig:
    values = dict(min_run_seconds=0.5, backoff_base=0.01, backoff_max=0.05, backoff_jitter=0.0)
    values.update(overrides)
    return AudioConfig(**values)


@pytest.fixture
def library(audio_dir: Path) -> AudioLibrary:
    return AudioLibrary(str(audio_dir))


@pytest.fixture
def bus() -> AudioBus:
    return AudioBus(capacity=64)


def _broadcaster(library, bus, builder, **config) -> AudioBroadcaster:
    return AudioBroadcaster(
        library,
        bus,
        _audio_config(**config),
        command_builder=builder,
        serve_feed=False,
        stop_timeout=1.0,
    )


@pytest.mark.unit
class TestAudioBroadcaster:
    """Encoder supervision."""

    @pytest.mark.asyncio
    async def test_finished_track_advances_and_notifies(self, library, bus):
        finished = []
        broadcaster = _broadcaster(library, bus, lambda url: _writer(b"mp3-bytes", 0.6))
        broadcaster.on_track_finished(lambda path: finished.append(Path(path).stem))
        sub = bus.subscribe()

        await broadcaster.start()
        assert await asyncio.wait_for(sub.get(), timeout=5.0) == b"mp3-bytes"
        await eventually(lambda: broadcaster.tracks_finished >= 1)
        await broadcaster.stop()

        assert finished[0] == "alpha"
        assert library.get_state().current != "alpha.mp3"

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self, library, bus):
        finished = []

        async def callback(path):
            await asyncio.sleep(0)
            finished.append(path)

        broadcaster = _broadcaster(library, bus, lambda url: _writer(b"x", 0.6))
        broadcaster.on_track_finished(callback)

        await broadcaster.start()
        await eventually(lambda: finished)
        await broadcaster.stop()

    @pytest.mark.asyncio
    async def test_failed_exits_count_as_failures(self, library, bus):
        broadcaster = _broadcaster(library, bus, lambda url: [sys.executable, "-c", "import sys; sys.exit(1)"])

        await broadcaster.start()
        await eventually(lambda: broadcaster.consecutive_failures >= 2)
        await broadcaster.stop()

        assert broadcaster.tracks_finished == 0
        assert library.get_state().current == "alpha.mp3"

    @pytest.mark.asyncio
    async def test_missing_encoder_backs_off(self, library, bus):
        broadcaster = _broadcaster(library, bus, lambda url: ["/nonexistent/ffmpeg-binary"])

        await broadcaster.start()
        await eventually(lambda: broadcaster.consecutive_failures >= 2)
        await broadcaster.stop()

    @pytest.mark.asyncio
    async def test_interrupt_restarts_without_advancing(self, library, bus):
        broadcaster = _broadcaster(library, bus, lambda url: _writer(b"x", 30))
        sub = bus.subscribe()

        await broadcaster.start()
        await eventually(broadcaster.is_encoder_running)
        await asyncio.wait_for(sub.get(), timeout=5.0)

        library.select_track("bravo")
        broadcaster.interrupt()
        await eventually(lambda: broadcaster.status()["encoderStarts"] >= 2)

        assert broadcaster.tracks_finished == 0
        assert broadcaster.consecutive_failures == 0
        assert library.get_state().current == "Bravo.mp3"
        assert sub.closed is False
        await broadcaster.stop()

    @pytest.mark.asyncio
    async def test_disable_closes_listeners(self, library, bus):
        broadcaster = _broadcaster(library, bus, lambda url: _writer(b"x", 30))
        sub = bus.subscribe()

        await broadcaster.start()
        await eventually(broadcaster.is_encoder_running)
        await broadcaster.set_enabled(False)

        assert broadcaster.enabled is False
        assert sub.closed is True
        await eventually(lambda: not broadcaster.is_encoder_running())
        await broadcaster.stop()

    @pytest.mark.asyncio
    async def test_skip_moves_to_next_track(self, library, bus):
        broadcaster = _broadcaster(library, bus, lambda url: _writer(b"x", 30))
        broadcaster.prime()

        path = broadcaster.skip()

        assert Path(path).stem == "Bravo"

    @pytest.mark.asyncio
    async def test_skip_prefers_queue(self, library, bus):
        broadcaster = _broadcaster(library, bus, lambda url: _writer(b"x", 30))
        broadcaster.prime()
        library.enqueue("charlie")

        assert Path(broadcaster.skip()).stem == "charlie"

    def test_status(self, library, bus):
        broadcaster = _broadcaster(library, bus, lambda url: _writer(b"x", 0))

        status = broadcaster.status()

        assert status["enabled"] is True
        assert status["encoderRunning"] is False
        assert status["subscribers"] == 0


@pytest.mark.unit
class TestFeed:
    """The internal feed serves the library's current track."""

    @pytest.mark.asyncio
    async def test_feed_streams_current_file(self, library, bus, audio_dir):
        (audio_dir / "alpha.mp3").write_bytes(b"A" * 20000)
        broadcaster = _broadcaster(library, bus, lambda url: _writer(b"", 0))
        broadcaster.prime()

        data = b"".join([chunk async for chunk in broadcaster.iter_feed()])

        assert data == b"A" * 20000

    @pytest.mark.asyncio
    async def test_feed_stops_when_track_changes(self, library, bus, audio_dir):
        (audio_dir / "alpha.mp3").write_bytes(b"A" * 50000)
        broadcaster = _broadcaster(library, bus, lambda url: _writer(b"", 0))
        broadcaster.prime()

        chunks = []
        async for chunk in broadcaster.iter_feed():
            chunks.append(chunk)
            library.select_track("bravo")

        assert len(chunks) == 1

    @pytest.mark.asyncio
    async def test_feed_without_track(self, temp_dir, bus):
        library = AudioLibrary(str(temp_dir / "empty"))
        broadcaster = _broadcaster(library, bus, lambda url: _writer(b"", 0))

        assert [chunk async for chunk in broadcaster.iter_feed()] == []
