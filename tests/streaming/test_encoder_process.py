"""
Encoder Process Tests

Runs short Python children in place of FFmpeg to check exit reasons,
stdout chunking, the stderr tail and stop escalation.
"""

import asyncio
import sys

import pytest

from printstreamer.ffmpeg.process import EncoderProcess, ExitReason, ProcessState
from printstreamer.streaming.error_handler import EncoderStartError


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


@pytest.mark.unit
class TestEncoderProcess:
    """Tests for EncoderProcess."""

    @pytest.mark.asyncio
    async def test_stdout_chunks_and_normal_exit(self):
        encoder = EncoderProcess("test", read_size=64)
        await encoder.start(_python("import sys; sys.stdout.buffer.write(b'a' * 1000)"))

        data = b"".join([chunk async for chunk in encoder.iter_chunks()])
        result = await encoder.wait()

        assert data == b"a" * 1000
        assert result.reason == ExitReason.NORMAL
        assert result.return_code == 0
        assert encoder.bytes_read == 1000
        assert encoder.state == ProcessState.STOPPED

    @pytest.mark.asyncio
    async def test_crash_keeps_stderr_tail(self):
        encoder = EncoderProcess("test", stderr_tail_chars=20)
        await encoder.start(_python("import sys; sys.stderr.write('x' * 50 + 'boom'); sys.exit(3)"))

        result = await encoder.wait()

        assert result.reason == ExitReason.CRASHED
        assert result.return_code == 3
        assert result.stderr_tail.endswith("boom")
        assert len(result.stderr_tail) <= 20

    @pytest.mark.asyncio
    async def test_missing_binary_raises(self):
        encoder = EncoderProcess("test")

        with pytest.raises(EncoderStartError):
            await encoder.start(["/nonexistent/ffmpeg-binary"])

        result = await encoder.wait()
        assert result.reason == ExitReason.CRASHED

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self):
        encoder = EncoderProcess("test")
        await encoder.start(_python("pass"))

        with pytest.raises(EncoderStartError):
            await encoder.start(_python("pass"))
        await encoder.wait()

    @pytest.mark.asyncio
    async def test_stop_terminates(self):
        encoder = EncoderProcess("test")
        await encoder.start(_python("import time; time.sleep(30)"))
        assert encoder.is_running()

        result = await encoder.stop(timeout=5.0)

        assert result.reason == ExitReason.KILLED
        assert encoder.is_running() is False

    @pytest.mark.asyncio
    async def test_stop_escalates_to_kill(self):
        code = (
            "import signal, sys, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "sys.stdout.write('ready'); sys.stdout.flush()\n"
            "time.sleep(30)\n"
        )
        encoder = EncoderProcess("test")
        await encoder.start(_python(code))
        # Wait until the handler is installed
        async for chunk in encoder.iter_chunks():
            if b"ready" in chunk:
                break

        result = await asyncio.wait_for(encoder.stop(timeout=0.3), timeout=5.0)

        assert result.reason == ExitReason.KILLED
        assert result.return_code != 0

    @pytest.mark.asyncio
    async def test_kill_reports_killed(self):
        encoder = EncoderProcess("test")
        await encoder.start(_python("import time; time.sleep(30)"))

        encoder.kill()
        result = await asyncio.wait_for(encoder.wait(), timeout=5.0)

        assert result.reason == ExitReason.KILLED

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        encoder = EncoderProcess("test")
        assert await encoder.stop() is None

        await encoder.start(_python("pass"))
        first = await encoder.wait()
        assert await encoder.stop() == first
