"""Printer control API endpoints."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from printstreamer.api.dependencies import get_command_queue
from printstreamer.printer.command_queue import TEMPERATURE_PRESETS, CommandQueue

router = APIRouter(prefix="/printer", tags=["Printer"])


class CommandRequest(BaseModel):
    command: str
    confirmed: bool = False


class TemperatureRequest(BaseModel):
    tool: Optional[float] = None
    bed: Optional[float] = None
    tool_index: int = 0


class PresetRequest(BaseModel):
    name: str
    tool_index: int = 0


@router.get("/state")
async def printer_state(request: Request) -> dict[str, Any]:
    observer = getattr(request.app.state, "printer_observer", None)
    state = observer.last_state if observer is not None else None
    return {"connected": state is not None, "state": state.to_dict() if state else None}


@router.post("/command")
async def send_command(body: CommandRequest, queue: CommandQueue = Depends(get_command_queue)) -> dict[str, Any]:
    result = await queue.send_command(body.command, confirmed=body.confirmed)
    return result.to_dict()


@router.post("/temperature")
async def set_temperature(body: TemperatureRequest,
                          queue: CommandQueue = Depends(get_command_queue)) -> dict[str, Any]:
    result = await queue.set_temperatures(tool=body.tool, bed=body.bed, tool_index=body.tool_index)
    return result.to_dict()


@router.get("/presets")
async def list_presets() -> dict[str, dict[str, int]]:
    return {name: {"tool": tool, "bed": bed} for name, (tool, bed) in TEMPERATURE_PRESETS.items()}


@router.post("/preset")
async def apply_preset(body: PresetRequest, queue: CommandQueue = Depends(get_command_queue)) -> dict[str, Any]:
    result = await queue.apply_preset(body.name, tool_index=body.tool_index)
    return result.to_dict()


@router.get("/console")
async def console(limit: int = 100, queue: CommandQueue = Depends(get_command_queue)) -> list[dict[str, Any]]:
    return [line.to_dict() for line in queue.console_lines(limit)]
