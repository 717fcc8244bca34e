"""
PrintStreamer Streaming Module

Components:
- AudioBus: lossy multi-subscriber fan-out of live MP3 bytes
- AudioBroadcaster: persistent audio encoder plus its local feed
  (printstreamer.streaming.audio_broadcaster)
- VideoStreamer: camera encoder to RTMP and/or local preview
  (printstreamer.streaming.video_streamer)
- ErrorClassifier: error taxonomy and backoff helpers
"""

from printstreamer.streaming.audio_bus import AudioBus, Subscription
from printstreamer.streaming.error_handler import (
    AuthenticationError,
    EncoderStartError,
    ErrorClassifier,
    ErrorKind,
    ErrorSeverity,
    ProviderError,
    StreamError,
    compute_backoff,
)

__all__ = [
    "AudioBus",
    "Subscription",
    "AuthenticationError",
    "EncoderStartError",
    "ErrorClassifier",
    "ErrorKind",
    "ErrorSeverity",
    "ProviderError",
    "StreamError",
    "compute_backoff",
]
