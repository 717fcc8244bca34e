"""
Broadcast reuse.

Persists created broadcasts per context key so a restarted agent (or a
repeated start for the same job) can keep using the same YouTube broadcast
instead of creating a new one every time.
"""

import asyncio
import json
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from printstreamer.broadcast.provider import BroadcastInfo, BroadcastProvider
from printstreamer.config import ReuseConfig
from printstreamer.streaming.error_handler import AuthenticationError
from printstreamer.utils.files import atomic_write_json

logger = logging.getLogger(__name__)

_FINISHED_LIFECYCLES = ("complete", "revoked")

# One lock per event loop; reuse decisions are serialized process-wide
_reuse_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
    weakref.WeakKeyDictionary()
)


def _get_reuse_lock() -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    lock = _reuse_locks.get(loop)
    if lock is None:
        lock = asyncio.Lock()
        _reuse_locks[loop] = lock
    return lock


@dataclass
class BroadcastRecord:
    """A persisted broadcast."""

    broadcast_id: str
    rtmp_url: str
    stream_key: str
    context_key: str
    created_at_utc: datetime
    ttl_minutes: int
    stream_id: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - self.created_at_utc > timedelta(minutes=self.ttl_minutes)

    def to_info(self) -> BroadcastInfo:
        return BroadcastInfo(self.broadcast_id, self.rtmp_url, self.stream_key, self.stream_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "broadcastId": self.broadcast_id,
            "rtmpUrl": self.rtmp_url,
            "streamKey": self.stream_key,
            "contextKey": self.context_key,
            "createdAtUtc": self.created_at_utc.isoformat(),
            "ttlMinutes": self.ttl_minutes,
            "streamId": self.stream_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BroadcastRecord":
        created = datetime.fromisoformat(data["createdAtUtc"])
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return cls(
            broadcast_id=data["broadcastId"],
            rtmp_url=data["rtmpUrl"],
            stream_key=data["streamKey"],
            context_key=data["contextKey"],
            created_at_utc=created,
            ttl_minutes=int(data["ttlMinutes"]),
            stream_id=data.get("streamId"),
        )


class BroadcastStore:
    """JSON file of broadcast records keyed by context."""

    def __init__(self, path: str):
        self.path = Path(path)

    def load_all(self) -> dict[str, BroadcastRecord]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Broadcast store {self.path} unreadable, starting empty: {e}")
            return {}

        records: dict[str, BroadcastRecord] = {}
        for item in raw if isinstance(raw, list) else []:
            try:
                record = BroadcastRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed broadcast record: {e}")
                continue
            records[record.context_key] = record
        return records

    def get(self, context_key: str) -> Optional[BroadcastRecord]:
        return self.load_all().get(context_key)

    def save(self, record: BroadcastRecord) -> None:
        records = self.load_all()
        records[record.context_key] = record
        self._write(records)

    def remove(self, context_key: str) -> bool:
        records = self.load_all()
        if records.pop(context_key, None) is None:
            return False
        self._write(records)
        return True

    def remove_by_broadcast_id(self, broadcast_id: str) -> bool:
        records = self.load_all()
        kept = {key: r for key, r in records.items() if r.broadcast_id != broadcast_id}
        if len(kept) == len(records):
            return False
        self._write(kept)
        return True

    def _write(self, records: dict[str, BroadcastRecord]) -> None:
        atomic_write_json(self.path, [r.to_dict() for r in records.values()])


class BroadcastReuseManager:
    """Looks up, validates, or creates the broadcast for a context key."""

    def __init__(
        self,
        provider: BroadcastProvider,
        store: BroadcastStore,
        config: Optional[ReuseConfig] = None,
    ):
        self.provider = provider
        self.store = store
        self.config = config or ReuseConfig()

    async def get_or_create_broadcast(
        self,
        title: str,
        context_key: str,
        description: str = "",
        privacy: str = "unlisted",
        category_id: str = "28",
    ) -> BroadcastInfo:
        """
        Reuse a stored broadcast for ``context_key`` or create one.

        Raises:
            AuthenticationError: When the provider cannot authenticate.
            ProviderError: When creation fails.
        """
        if not self.config.enabled:
            logger.debug("Broadcast reuse disabled, creating new broadcast")
            return await self._create_and_persist(title, context_key, description, privacy, category_id)

        async with _get_reuse_lock():
            existing = self.store.get(context_key)
            if existing is not None and not existing.is_expired():
                if await self._validate(existing):
                    logger.info(f"Reusing broadcast {existing.broadcast_id} for context '{context_key}'")
                    return existing.to_info()
                logger.info(f"Stored broadcast for context '{context_key}' is no longer valid, removing")
                self.store.remove(context_key)
            elif existing is not None:
                logger.info(f"Stored broadcast for context '{context_key}' expired, removing")
                self.store.remove(context_key)

            return await self._create_and_persist(title, context_key, description, privacy, category_id)

    async def _validate(self, record: BroadcastRecord) -> bool:
        if not record.broadcast_id:
            return False
        try:
            if not await self.provider.authenticate():
                logger.warning(f"Authentication failed while validating broadcast {record.broadcast_id}")
                return False

            privacy = await self.provider.get_broadcast_privacy(record.broadcast_id)
            if privacy is None:
                logger.info(f"Broadcast {record.broadcast_id} not found")
                return False

            if self.config.only_unlisted_or_private and privacy.lower() == "public":
                logger.info(f"Rejecting reuse of public broadcast {record.broadcast_id}")
                return False

            lifecycle = await self.provider.get_lifecycle_status(record.broadcast_id)
            if lifecycle in _FINISHED_LIFECYCLES:
                logger.info(f"Broadcast {record.broadcast_id} is {lifecycle}, not reusable")
                return False

            return True
        except Exception as e:
            logger.warning(f"Error validating broadcast {record.broadcast_id}: {e}")
            return False

    def forget(self, broadcast_id: str) -> bool:
        """Drop any stored record pointing at an ended broadcast."""
        removed = self.store.remove_by_broadcast_id(broadcast_id)
        if removed:
            logger.info(f"Removed stored record for ended broadcast {broadcast_id}")
        return removed

    async def _create_and_persist(
        self,
        title: str,
        context_key: str,
        description: str,
        privacy: str,
        category_id: str,
    ) -> BroadcastInfo:
        if not await self.provider.authenticate():
            raise AuthenticationError("Provider authentication failed")

        info = await self.provider.create_broadcast(title, description, privacy, category_id)
        record = BroadcastRecord(
            broadcast_id=info.broadcast_id,
            rtmp_url=info.rtmp_url,
            stream_key=info.stream_key,
            context_key=context_key,
            created_at_utc=datetime.now(timezone.utc),
            ttl_minutes=self.config.ttl_minutes,
            stream_id=info.stream_id,
        )
        self.store.save(record)
        logger.info(f"Created and stored broadcast {info.broadcast_id} for context '{context_key}'")
        return info
