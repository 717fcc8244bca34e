"""
Unit tests for Moonraker status parsing, the client and the observer.
"""

import json

import httpx
import pytest

from printstreamer.config import MoonrakerConfig
from printstreamer.printer.moonraker import MoonrakerClient, PrinterObserver, parse_printer_state
from printstreamer.printer.state import PrintState


def _status(**print_stats) -> dict:
    return {
        "print_stats": {"state": "printing", "filename": "part.gcode", **print_stats},
        "heater_bed": {"temperature": 59.8, "target": 60.0},
        "extruder": {"temperature": 210.2, "target": 210.0},
    }


@pytest.mark.unit
class TestParsePrinterState:
    """Tests for parse_printer_state."""

    def test_basic_fields(self):
        state = parse_printer_state(_status(info={"current_layer": 10, "total_layer": 200}))

        assert state.state == PrintState.PRINTING
        assert state.filename == "part.gcode"
        assert state.current_layer == 10
        assert state.total_layers == 200
        assert state.bed_temp_target == 60.0
        assert state.tool_temp_actual == 210.2
        assert state.is_active is True

    def test_fraction_progress_becomes_percent(self):
        status = _status()
        status["virtual_sdcard"] = {"progress": 0.25}

        assert parse_printer_state(status).progress_percent == 25.0

    def test_progress_from_layers(self):
        state = parse_printer_state(_status(info={"current_layer": 50, "total_layer": 200}))
        assert state.progress_percent == 25.0

    def test_remaining_from_info(self):
        state = parse_printer_state(_status(info={"time_remaining": 90}))
        assert state.remaining.total_seconds() == 90

    def test_remaining_estimated_from_duration(self):
        status = _status(print_duration=600)
        status["display_status"] = {"progress": 0.5}

        assert parse_printer_state(status).remaining.total_seconds() == 600

    def test_cancelled_maps_to_stopped(self):
        assert parse_printer_state({"print_stats": {"state": "cancelled"}}).state == PrintState.STOPPED

    def test_empty_status(self):
        state = parse_printer_state({})

        assert state.state == PrintState.UNKNOWN
        assert state.filename == ""
        assert state.progress_percent is None
        assert state.is_active is False
        assert state.is_done is False


@pytest.mark.unit
class TestMoonrakerClient:

    @pytest.mark.asyncio
    async def test_query_state(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"result": {"status": _status()}})

        client = MoonrakerClient(MoonrakerConfig(api_key="k"), transport=httpx.MockTransport(handler))
        state = await client.query_state()

        assert state.filename == "part.gcode"
        assert seen[0].url.path == "/printer/objects/query"
        assert "print_stats" in seen[0].url.params
        assert seen[0].headers["X-Api-Key"] == "k"
        await client.close()

    @pytest.mark.asyncio
    async def test_send_gcode(self):
        scripts = []

        def handler(request: httpx.Request) -> httpx.Response:
            scripts.append(json.loads(request.content)["script"])
            return httpx.Response(200, json={"result": "ok"})

        client = MoonrakerClient(transport=httpx.MockTransport(handler))

        assert await client.send_gcode("G28") == "ok"
        assert scripts == ["G28"]
        await client.close()

    @pytest.mark.asyncio
    async def test_send_gcode_error_raises(self):
        client = MoonrakerClient(transport=httpx.MockTransport(lambda r: httpx.Response(400, json={})))

        with pytest.raises(httpx.HTTPStatusError):
            await client.send_gcode("BAD")
        await client.close()


@pytest.mark.unit
class TestPrinterObserver:
    """Tests for snapshot delivery."""

    @pytest.mark.asyncio
    async def test_delivers_previous_and_current(self):
        states = iter(["printing", "complete"])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"result": {"status": {"print_stats": {"state": next(states)}}}})

        observer = PrinterObserver(MoonrakerClient(transport=httpx.MockTransport(handler)))
        received = []

        async def callback(previous, current):
            received.append((previous.state if previous else None, current.state))

        observer.subscribe(callback)
        await observer.poll_once()
        await observer.poll_once()

        assert received == [(None, PrintState.PRINTING), (PrintState.PRINTING, PrintState.COMPLETE)]
        assert observer.last_state.state == PrintState.COMPLETE

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_others(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"result": {"status": {"print_stats": {"state": "idle"}}}})

        observer = PrinterObserver(MoonrakerClient(transport=httpx.MockTransport(handler)))
        received = []

        def broken(previous, current):
            raise RuntimeError("boom")

        observer.subscribe(broken)
        observer.subscribe(lambda previous, current: received.append(current.state))
        await observer.poll_once()

        assert received == [PrintState.IDLE]

    @pytest.mark.asyncio
    async def test_unreachable_printer(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        observer = PrinterObserver(MoonrakerClient(transport=httpx.MockTransport(handler)))

        assert await observer.poll_once() is None
        assert observer.last_state is None
