"""Background music library for PrintStreamer"""

from printstreamer.audio.library import (
    SUPPORTED_EXTENSIONS,
    AudioLibrary,
    AudioTrack,
    LibraryState,
    RepeatMode,
)

__all__ = [
    "SUPPORTED_EXTENSIONS",
    "AudioLibrary",
    "AudioTrack",
    "LibraryState",
    "RepeatMode",
]
