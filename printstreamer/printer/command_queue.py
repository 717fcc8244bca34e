"""
Printer command queue.

Commands are checked against the prefix policy, then sent one at a time by
a single worker task with a minimum interval between sends. Every send and
every rejection is recorded in a bounded console buffer.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from printstreamer.config import MoonrakerConfig
from printstreamer.streaming.error_handler import ErrorKind

logger = logging.getLogger(__name__)

CommandSender = Callable[[str], Awaitable[Any]]

# (tool, bed) in degrees C
TEMPERATURE_PRESETS: dict[str, tuple[int, int]] = {
    "pla": (200, 60),
    "petg": (240, 70),
    "abs": (250, 100),
    "tpu": (220, 60),
    "nylon": (250, 85),
    "cooldown": (0, 0),
}


@dataclass
class CommandResult:
    """Outcome of a command request."""

    ok: bool
    message: str = ""
    command: Optional[str] = None
    kind: Optional[ErrorKind] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "message": self.message,
            "command": self.command,
            "kind": self.kind.value if self.kind else None,
        }


@dataclass
class ConsoleLine:
    text: str
    level: str = "info"
    from_local: bool = True
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "level": self.level,
            "fromLocal": self.from_local,
            "timestamp": self.timestamp.isoformat(),
        }


class CommandQueue:
    """
    Serializes printer commands.

    Usage:
        queue = CommandQueue(client.send_gcode, config.moonraker)
        result = await queue.send_command("G28")
        result = await queue.apply_preset("pla")
    """

    def __init__(
        self,
        sender: CommandSender,
        config: Optional[MoonrakerConfig] = None,
    ):
        self._sender = sender
        self.config = config or MoonrakerConfig()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Future] = None
        self._last_sent_at: Optional[float] = None
        self._console: deque[ConsoleLine] = deque(maxlen=self.config.console_lines)
        self.commands_sent = 0

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        self._ensure_worker()

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        if self._in_flight is not None and not self._in_flight.done():
            self._in_flight.set_result(CommandResult(False, "Command queue stopped"))
        self._in_flight = None

        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.set_result(CommandResult(False, "Command queue stopped"))

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process())

    # ==================== Commands ====================

    def check_policy(self, script: str, confirmed: bool = False) -> Optional[CommandResult]:
        """Return a rejection for ``script``, or None when it may be sent."""
        for line in script.splitlines():
            upper = line.strip().upper()
            if not upper:
                continue
            for prefix in self.config.disallowed_prefixes:
                if prefix and upper.startswith(prefix.upper()):
                    return CommandResult(
                        False, f"Command blocked by disallowed prefix: {prefix}", script, ErrorKind.BLOCKED
                    )
            if not confirmed:
                for prefix in self.config.confirmation_prefixes:
                    if prefix and upper.startswith(prefix.upper()):
                        return CommandResult(
                            False, "confirmation-required", script, ErrorKind.CONFIRMATION_REQUIRED
                        )
        return None

    async def send_command(self, command: str, confirmed: bool = False) -> CommandResult:
        """Queue a command (or multi-line script) and wait for its result."""
        script = (command or "").strip()
        if not script:
            return CommandResult(False, "Empty command")

        rejection = self.check_policy(script, confirmed)
        if rejection is not None:
            if rejection.kind == ErrorKind.BLOCKED:
                self._add_line(rejection.message, level="warn")
            else:
                self._add_line(f"Confirmation required for: {script}", level="warn")
            logger.info(f"Rejected printer command '{script}': {rejection.message}")
            return rejection

        self._ensure_worker()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((script, future))
        return await future

    async def set_tool_temperature(self, temperature: float, tool_index: int = 0) -> CommandResult:
        error = self._check_range("Tool", temperature, self.config.max_tool_temp)
        if error is not None:
            return error
        return await self.send_command(self._tool_command(temperature, tool_index))

    async def set_bed_temperature(self, temperature: float) -> CommandResult:
        error = self._check_range("Bed", temperature, self.config.max_bed_temp)
        if error is not None:
            return error
        return await self.send_command(f"M140 S{temperature:g}")

    async def set_temperatures(
        self,
        tool: Optional[float] = None,
        bed: Optional[float] = None,
        tool_index: int = 0,
    ) -> CommandResult:
        """Set tool and bed together as one script."""
        lines = []
        if tool is not None:
            error = self._check_range("Tool", tool, self.config.max_tool_temp)
            if error is not None:
                return error
            lines.append(self._tool_command(tool, tool_index))
        if bed is not None:
            error = self._check_range("Bed", bed, self.config.max_bed_temp)
            if error is not None:
                return error
            lines.append(f"M140 S{bed:g}")
        if not lines:
            return CommandResult(True, "No-op")
        return await self.send_command("\n".join(lines))

    async def apply_preset(self, name: str, tool_index: int = 0) -> CommandResult:
        preset = TEMPERATURE_PRESETS.get((name or "").strip().lower())
        if preset is None:
            return CommandResult(False, f"Unknown preset: {name}")
        tool, bed = preset
        return await self.set_temperatures(tool=tool, bed=bed, tool_index=tool_index)

    def console_lines(self, limit: int = 100) -> list[ConsoleLine]:
        if limit <= 0:
            return []
        return list(self._console)[-limit:]

    # ==================== Internals ====================

    @staticmethod
    def _tool_command(temperature: float, tool_index: int) -> str:
        if tool_index <= 0:
            return f"M104 S{temperature:g}"
        return f"M104 T{tool_index} S{temperature:g}"

    @staticmethod
    def _check_range(label: str, temperature: float, maximum: float) -> Optional[CommandResult]:
        if temperature < 0 or temperature > maximum:
            return CommandResult(False, f"{label} temperature out of range (0..{maximum:g})")
        return None

    def _add_line(self, text: str, level: str = "info", from_local: bool = True) -> None:
        self._console.append(ConsoleLine(text=text, level=level, from_local=from_local))

    async def _process(self) -> None:
        try:
            while True:
                script, future = await self._queue.get()
                if future.done():
                    continue
                self._in_flight = future

                if self._last_sent_at is not None:
                    wait = self.config.command_interval_seconds - (time.monotonic() - self._last_sent_at)
                    if wait > 0:
                        await asyncio.sleep(wait)

                try:
                    response = await self._sender(script)
                    self.commands_sent += 1
                    self._add_line(f"Sent: {script}")
                    if response and response != "ok":
                        self._add_line(str(response), from_local=False)
                    result = CommandResult(True, "Sent", script)
                except Exception as e:
                    logger.warning(f"Printer command '{script}' failed: {e}")
                    self._add_line(f"Send failed: {e}", level="error")
                    result = CommandResult(False, f"Send failed: {e}", script)
                finally:
                    self._last_sent_at = time.monotonic()

                if not future.done():
                    future.set_result(result)
                self._in_flight = None

        except asyncio.CancelledError:
            logger.debug("Command queue worker cancelled")
        except Exception as e:
            logger.critical(f"Command queue worker crashed: {e}", exc_info=True)
