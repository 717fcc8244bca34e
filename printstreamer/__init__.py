"""
PrintStreamer - Headless Live Streaming Agent for 3D Printers

Turns a printer host into a live broadcast station:
- Supervised FFmpeg encoders for the camera feed and background music
- Live MP3 fan-out to any number of local listeners
- Print-driven YouTube broadcasts with ingestion readiness handling
- Automatic time-lapse capture, assembly and upload
- Rate-limited, policy-checked printer console
"""

__version__ = "1.0.0"
__author__ = "PrintStreamer Contributors"
__license__ = "MIT"

from printstreamer.config import get_config, load_config

__all__ = [
    "__version__",
    "get_config",
    "load_config",
]
