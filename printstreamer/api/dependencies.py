"""Accessors for the singletons the lifespan puts on ``app.state``."""

from typing import Any

from fastapi import HTTPException, Request


def _get(request: Request, name: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(status_code=503, detail=f"{name} not available")
    return component


def get_coordinator(request: Request):
    return _get(request, "coordinator")


def get_orchestrator(request: Request):
    return _get(request, "orchestrator")


def get_broadcaster(request: Request):
    return _get(request, "audio_broadcaster")


def get_library(request: Request):
    return _get(request, "audio_library")


def get_bus(request: Request):
    return _get(request, "audio_bus")


def get_command_queue(request: Request):
    return _get(request, "command_queue")


def get_observer(request: Request):
    return _get(request, "printer_observer")
