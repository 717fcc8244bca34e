"""
Broadcast provider contract.

The coordinator, reuse manager and print orchestrator only talk to the
live-video service through this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from printstreamer.utils.logging_setup import mask_secret


@dataclass
class BroadcastInfo:
    """A created (or reused) broadcast bound to an ingestion stream."""

    broadcast_id: str
    rtmp_url: str
    stream_key: str
    stream_id: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"BroadcastInfo(broadcast_id={self.broadcast_id!r}, rtmp_url={self.rtmp_url!r}, "
            f"stream_key={mask_secret(self.stream_key)!r}, stream_id={self.stream_id!r})"
        )


class BroadcastProvider(ABC):
    """Abstract live broadcast service."""

    name: str = "provider"

    @abstractmethod
    async def authenticate(self) -> bool:
        """Make sure valid credentials are available."""

    @abstractmethod
    async def create_broadcast(
        self,
        title: str,
        description: str = "",
        privacy: str = "unlisted",
        category_id: str = "28",
    ) -> BroadcastInfo:
        """Create a broadcast and an ingestion stream, and bind them."""

    @abstractmethod
    async def get_broadcast_privacy(self, broadcast_id: str) -> Optional[str]:
        """Privacy status of a broadcast, or None when it does not exist."""

    @abstractmethod
    async def wait_for_ingestion(self, stream_id: Optional[str], timeout: float = 30.0) -> bool:
        """Poll until the stream reports active ingestion or the timeout passes."""

    @abstractmethod
    async def transition_to_live(self, broadcast_id: str) -> bool:
        """Move the broadcast to live. Already live counts as success."""

    @abstractmethod
    async def end_broadcast(self, broadcast_id: str) -> bool:
        """Complete the broadcast."""

    @abstractmethod
    async def upload_video(self, path: str, title: str, description: str = "") -> Optional[str]:
        """Upload a finished video. Returns its id."""

    @abstractmethod
    async def set_thumbnail(self, video_id: str, image: bytes) -> bool:
        """Set a JPEG thumbnail on a video."""

    @abstractmethod
    async def ensure_playlist(self, name: str, privacy: str = "unlisted") -> Optional[str]:
        """Find or create a playlist by name. Returns its id."""

    @abstractmethod
    async def add_to_playlist(self, playlist_id: str, video_id: str) -> bool:
        """Append a video (or ended broadcast) to a playlist."""

    async def get_lifecycle_status(self, broadcast_id: str) -> Optional[str]:
        """Lifecycle status such as "ready", "live" or "complete". None when unknown."""
        return None

    async def close(self) -> None:
        """Release network resources."""
