"""
PrintStreamer Broadcast Module

Components:
- BroadcastProvider: abstract live-video service
- YouTubeProvider: YouTube Data API v3 implementation
- BroadcastReuseManager / BroadcastStore: per-context broadcast reuse
- BroadcastCoordinator: owner of the streamer and the current broadcast
"""

from printstreamer.broadcast.provider import BroadcastInfo, BroadcastProvider
from printstreamer.broadcast.token_store import OAuthToken, TokenStore
from printstreamer.broadcast.youtube import YouTubeProvider
from printstreamer.broadcast.reuse import BroadcastRecord, BroadcastReuseManager, BroadcastStore
from printstreamer.broadcast.coordinator import BroadcastCoordinator, BroadcastResult

__all__ = [
    "BroadcastInfo",
    "BroadcastProvider",
    "OAuthToken",
    "TokenStore",
    "YouTubeProvider",
    "BroadcastRecord",
    "BroadcastReuseManager",
    "BroadcastStore",
    "BroadcastCoordinator",
    "BroadcastResult",
]
