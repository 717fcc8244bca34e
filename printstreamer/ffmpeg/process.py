"""
Supervised FFmpeg child process.

Wraps one external encoder: spawns it, drains stderr into a bounded
diagnostic tail, exposes stdout as an async chunk iterator, and reports a
single exit event with a reason.
"""

import asyncio
import logging
import os
import signal
import time
from asyncio.subprocess import Process
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

from printstreamer.streaming.error_handler import EncoderStartError

logger = logging.getLogger(__name__)


class ExitReason(str, Enum):
    """Why an encoder process ended."""
    NORMAL = "normal"
    KILLED = "killed"
    CRASHED = "crashed"


class ProcessState(str, Enum):
    """State of an encoder process."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class ProcessExit:
    """Exit information reported once per process."""
    reason: ExitReason
    return_code: Optional[int]
    stderr_tail: str
    runtime_seconds: float

    @property
    def is_normal(self) -> bool:
        return self.reason == ExitReason.NORMAL


class EncoderProcess:
    """
    One supervised encoder child.

    Usage:
        encoder = EncoderProcess("audio")
        await encoder.start(argv)
        async for chunk in encoder.iter_chunks():
            bus.publish(chunk)
        result = await encoder.wait()
    """

    def __init__(
        self,
        name: str,
        read_size: int = 8192,
        stderr_tail_chars: int = 2000,
        stop_timeout: float = 5.0,
    ):
        self.name = name
        self._read_size = read_size
        self._stderr_tail_chars = stderr_tail_chars
        self._stop_timeout = stop_timeout

        self._process: Optional[Process] = None
        self._state = ProcessState.IDLE
        self._argv: list[str] = []
        self._started_at = 0.0
        self._stderr_tail = ""
        self._bytes_read = 0
        self._stop_requested = False

        self._stderr_task: Optional[asyncio.Task] = None
        self._wait_task: Optional[asyncio.Task] = None
        self._exit: Optional[asyncio.Future] = None

    async def start(self, argv: list[str], capture_stdout: bool = True) -> None:
        """
        Launch the child.

        Raises:
            EncoderStartError: If the process cannot be launched or was
                already started.
        """
        if self._state != ProcessState.IDLE:
            raise EncoderStartError(f"Encoder {self.name} already started", argv)

        self._argv = list(argv)
        loop = asyncio.get_running_loop()
        self._exit = loop.create_future()

        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if capture_stdout else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            self._state = ProcessState.STOPPED
            self._exit.set_result(ProcessExit(ExitReason.CRASHED, None, str(e), 0.0))
            raise EncoderStartError(f"Failed to launch {argv[0] if argv else '<empty>'}: {e}", argv) from e

        self._started_at = time.monotonic()
        self._state = ProcessState.RUNNING
        logger.info(f"Encoder {self.name} started (pid {self._process.pid})")
        logger.debug(f"Encoder {self.name} argv: {self._redacted_argv()}")

        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._wait_task = asyncio.create_task(self._wait_for_exit())

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """Yield stdout chunks until EOF. Chunk size is not guaranteed."""
        if self._process is None or self._process.stdout is None:
            return

        stdout = self._process.stdout
        while True:
            try:
                chunk = await stdout.read(self._read_size)
            except (ConnectionResetError, BrokenPipeError):
                break
            if not chunk:
                break
            self._bytes_read += len(chunk)
            yield chunk

    async def wait(self) -> ProcessExit:
        """Wait for the exit event."""
        if self._exit is None:
            raise RuntimeError(f"Encoder {self.name} was never started")
        return await asyncio.shield(self._exit)

    async def stop(self, timeout: Optional[float] = None) -> Optional[ProcessExit]:
        """
        Terminate the child and its process tree.

        Sends SIGTERM, waits up to ``timeout`` seconds, then SIGKILL.
        Safe to call repeatedly.
        """
        if self._process is None or self._exit is None:
            return None

        self._stop_requested = True
        if self._exit.done():
            return self._exit.result()

        self._state = ProcessState.STOPPING
        grace = self._stop_timeout if timeout is None else timeout
        self._signal_tree(signal.SIGTERM)

        try:
            return await asyncio.wait_for(asyncio.shield(self._exit), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"Encoder {self.name} did not exit within {grace}s, killing")
            self._signal_tree(signal.SIGKILL)
            return await asyncio.shield(self._exit)

    def kill(self) -> None:
        """Force-kill the child immediately without waiting."""
        if self._process is None or self._exit is None or self._exit.done():
            return
        self._stop_requested = True
        self._state = ProcessState.STOPPING
        self._signal_tree(signal.SIGKILL)

    def is_running(self) -> bool:
        return self._state in (ProcessState.RUNNING, ProcessState.STOPPING)

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def stderr_tail(self) -> str:
        return self._stderr_tail

    @property
    def bytes_read(self) -> int:
        return self._bytes_read

    @property
    def uptime_seconds(self) -> float:
        if not self._started_at:
            return 0.0
        return time.monotonic() - self._started_at

    def _signal_tree(self, sig: int) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, sig)
            elif sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.warning(f"Cannot signal encoder {self.name} process group: {e}")
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def _drain_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        try:
            while True:
                data = await process.stderr.read(self._read_size)
                if not data:
                    break
                text = data.decode("utf-8", errors="replace")
                self._stderr_tail = (self._stderr_tail + text)[-self._stderr_tail_chars:]
                for line in text.splitlines():
                    if line.strip():
                        logger.debug(f"[{self.name}] {line.strip()}")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Encoder {self.name} stderr drain ended: {e}")

    async def _wait_for_exit(self) -> None:
        process = self._process
        assert process is not None and self._exit is not None

        return_code = await process.wait()

        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(self._stderr_task, timeout=1.0)
            except asyncio.TimeoutError:
                self._stderr_task.cancel()

        runtime = time.monotonic() - self._started_at
        if self._stop_requested:
            reason = ExitReason.KILLED
        elif return_code == 0:
            reason = ExitReason.NORMAL
        else:
            reason = ExitReason.CRASHED

        self._state = ProcessState.STOPPED
        result = ProcessExit(reason, return_code, self._stderr_tail, runtime)

        if reason == ExitReason.CRASHED:
            logger.warning(
                f"Encoder {self.name} exited with code {return_code} after {runtime:.1f}s: "
                f"{self._stderr_tail[-500:].strip()}"
            )
        else:
            logger.info(f"Encoder {self.name} exited ({reason.value}) after {runtime:.1f}s")

        if not self._exit.done():
            self._exit.set_result(result)

    def _redacted_argv(self) -> str:
        # RTMP destinations carry the stream key as the last path segment
        parts = []
        for arg in self._argv:
            if arg.startswith("rtmp://") or arg.startswith("rtmps://"):
                head, _, _ = arg.rpartition("/")
                parts.append(f"{head}/***")
            else:
                parts.append(arg)
        return " ".join(parts)
