"""
Moonraker client and printer observer.

MoonrakerClient talks to the Moonraker REST API (status queries and G-code
scripts). PrinterObserver polls it and hands (previous, current) snapshot
pairs to its subscribers one at a time.
"""

import asyncio
import inspect
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from printstreamer.config import MoonrakerConfig
from printstreamer.printer.state import PrinterState, PrintState

logger = logging.getLogger(__name__)

QUERY_OBJECTS = ("print_stats", "virtual_sdcard", "display_status", "heater_bed", "extruder")

_CURRENT_LAYER_KEYS = ("current_layer", "CURRENT_LAYER", "layer", "currentLayer")
_TOTAL_LAYER_KEYS = ("total_layer", "TOTAL_LAYER", "total_layers", "total_layer_count", "layer_count")
_REMAINING_KEYS = ("time_remaining", "remaining_time", "eta_seconds")

StateCallback = Callable[[Optional[PrinterState], PrinterState], Union[None, Awaitable[None]]]


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> Optional[int]:
    number = _as_float(value)
    return int(number) if number is not None else None


def _first(mapping: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if mapping.get(key) is not None:
            return mapping[key]
    return None


def _normalize_progress(value: Any) -> Optional[float]:
    progress = _as_float(value)
    if progress is None:
        return None
    # Fractions (0..1) become percent
    return progress * 100.0 if progress <= 1.0 else progress


def parse_printer_state(status: dict[str, Any]) -> PrinterState:
    """Map a Moonraker ``objects/query`` status block into a PrinterState."""
    print_stats = status.get("print_stats") or {}
    sdcard = status.get("virtual_sdcard") or {}
    display = status.get("display_status") or {}
    bed = status.get("heater_bed") or {}
    extruder = status.get("extruder") or {}
    info = print_stats.get("info") or {}

    progress = _normalize_progress(print_stats.get("progress"))
    if progress is None:
        progress = _normalize_progress(sdcard.get("progress"))
    if progress is None:
        progress = _normalize_progress(display.get("progress"))

    current_layer = _as_int(_first(info, _CURRENT_LAYER_KEYS))
    total_layers = _as_int(_first(info, _TOTAL_LAYER_KEYS))

    if progress is None and current_layer is not None and total_layers:
        progress = current_layer / total_layers * 100.0

    remaining = None
    remaining_seconds = _as_float(_first(info, _REMAINING_KEYS))
    if remaining_seconds is not None and remaining_seconds >= 0:
        remaining = timedelta(seconds=remaining_seconds)
    else:
        duration = _as_float(print_stats.get("print_duration"))
        if duration and progress and 0 < progress < 100:
            remaining = timedelta(seconds=duration * (100.0 - progress) / progress)

    return PrinterState(
        state=PrintState.parse(print_stats.get("state")),
        filename=print_stats.get("filename") or "",
        progress_percent=progress,
        remaining=remaining,
        current_layer=current_layer,
        total_layers=total_layers,
        bed_temp_actual=_as_float(bed.get("temperature")),
        bed_temp_target=_as_float(bed.get("target")),
        tool_temp_actual=_as_float(extruder.get("temperature")),
        tool_temp_target=_as_float(extruder.get("target")),
    )


class MoonrakerClient:
    """
    Async client for the Moonraker REST API.

    Usage:
        client = MoonrakerClient(config.moonraker)
        state = await client.query_state()
        await client.send_gcode("M140 S60")
    """

    def __init__(
        self,
        config: Optional[MoonrakerConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or MoonrakerConfig()
        headers = {"X-Api-Key": self.config.api_key} if self.config.api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            headers=headers,
            timeout=self.config.request_timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def query_state(self) -> PrinterState:
        """
        Query the printer objects and return a snapshot.

        Raises:
            httpx.HTTPError: On transport failures or non-2xx responses.
        """
        response = await self._client.get("/printer/objects/query", params={name: "" for name in QUERY_OBJECTS})
        response.raise_for_status()
        status = (response.json().get("result") or {}).get("status") or {}
        return parse_printer_state(status)

    async def send_gcode(self, script: str) -> str:
        """
        Run a G-code script. Multi-line scripts run in order.

        Raises:
            httpx.HTTPError: When Moonraker rejects the script.
        """
        response = await self._client.post("/printer/gcode/script", json={"script": script})
        response.raise_for_status()
        result = response.json().get("result")
        return result if isinstance(result, str) else "ok"

    async def fetch_snapshot(self, url: str) -> Optional[bytes]:
        """Fetch a JPEG snapshot; None on any failure."""
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            return response.content
        except httpx.HTTPError as e:
            logger.debug(f"Snapshot fetch failed: {e}")
            return None


class PrinterObserver:
    """
    Polls the printer and delivers snapshot transitions.

    Subscribers are called serially in registration order; a subscriber
    sees the effects of every earlier delivery before the next one starts.
    """

    def __init__(
        self,
        client: MoonrakerClient,
        poll_interval: float = 2.0,
    ):
        self._client = client
        self._poll_interval = poll_interval
        self._subscribers: list[StateCallback] = []
        self._task: Optional[asyncio.Task] = None
        self._last: Optional[PrinterState] = None
        self._consecutive_errors = 0

    @property
    def last_state(self) -> Optional[PrinterState]:
        return self._last

    def subscribe(self, callback: StateCallback) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: StateCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Printer observer started (interval {self._poll_interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Printer observer stopped")

    async def poll_once(self) -> Optional[PrinterState]:
        """Query once and deliver the snapshot. Returns it, or None on failure."""
        try:
            current = await self._client.query_state()
        except httpx.HTTPError as e:
            self._consecutive_errors += 1
            if self._consecutive_errors == 1 or self._consecutive_errors % 30 == 0:
                logger.warning(f"Printer poll failed ({self._consecutive_errors}x): {e}")
            return None

        if self._consecutive_errors:
            logger.info("Printer reachable again")
        self._consecutive_errors = 0

        previous, self._last = self._last, current
        await self._deliver(previous, current)
        return current

    async def _deliver(self, previous: Optional[PrinterState], current: PrinterState) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(previous, current)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Printer state subscriber failed: {e}", exc_info=True)

    async def _poll_loop(self) -> None:
        try:
            while True:
                await self.poll_once()
                await asyncio.sleep(self._poll_interval)
        except asyncio.CancelledError:
            logger.debug("Printer poll loop cancelled")
        except Exception as e:
            logger.critical(f"Printer poll loop crashed: {e}", exc_info=True)
