"""API routes for PrintStreamer"""

from fastapi import APIRouter

from .audio import router as audio_router
from .audio import stream_router
from .config_api import router as config_router
from .health import router as health_router
from .live import router as live_router
from .printer import router as printer_router

# Create the main API router
api_router = APIRouter(prefix="/api")

api_router.include_router(live_router)
api_router.include_router(audio_router)
api_router.include_router(printer_router)
api_router.include_router(config_router)

__all__ = ["api_router", "health_router", "stream_router"]
