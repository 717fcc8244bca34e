"""
Unit tests for broadcast reuse.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from printstreamer.broadcast.reuse import BroadcastRecord, BroadcastReuseManager, BroadcastStore
from printstreamer.config import ReuseConfig
from printstreamer.streaming.error_handler import AuthenticationError
from tests.fixtures import FakeProvider


@pytest.fixture
def store(temp_dir: Path) -> BroadcastStore:
    return BroadcastStore(str(temp_dir / "reuse.json"))


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


def _record(context_key: str, broadcast_id: str = "old", age_minutes: int = 0, ttl: int = 60) -> BroadcastRecord:
    return BroadcastRecord(
        broadcast_id=broadcast_id,
        rtmp_url="rtmp://host/live2",
        stream_key="key-old",
        context_key=context_key,
        created_at_utc=datetime.now(timezone.utc) - timedelta(minutes=age_minutes),
        ttl_minutes=ttl,
        stream_id="s-old",
    )


@pytest.mark.unit
class TestBroadcastStore:

    def test_save_get_remove(self, store: BroadcastStore):
        store.save(_record("part"))

        assert store.get("part").broadcast_id == "old"
        assert store.remove("part") is True
        assert store.remove("part") is False
        assert store.get("part") is None

    def test_remove_by_broadcast_id(self, store: BroadcastStore):
        store.save(_record("part", broadcast_id="b7"))
        store.save(_record("other", broadcast_id="b8"))

        assert store.remove_by_broadcast_id("b7") is True
        assert store.remove_by_broadcast_id("b7") is False
        assert store.get("part") is None
        assert store.get("other").broadcast_id == "b8"

    def test_corrupt_file_starts_empty(self, store: BroadcastStore):
        store.path.write_text("[{]")
        assert store.load_all() == {}

    def test_malformed_record_is_skipped(self, store: BroadcastStore):
        good = _record("good").to_dict()
        store.path.write_text(json.dumps([good, {"broadcastId": "x"}]))

        assert list(store.load_all()) == ["good"]

    def test_expiry(self):
        assert _record("a", age_minutes=61, ttl=60).is_expired() is True
        assert _record("a", age_minutes=10, ttl=60).is_expired() is False


@pytest.mark.unit
class TestReuseManager:
    """Tests for get_or_create_broadcast."""

    @pytest.mark.asyncio
    async def test_creates_and_persists(self, provider: FakeProvider, store: BroadcastStore):
        manager = BroadcastReuseManager(provider, store, ReuseConfig(ttl_minutes=30))

        info = await manager.get_or_create_broadcast("Title", "part")

        assert info.broadcast_id == "b1"
        record = store.get("part")
        assert record.broadcast_id == "b1"
        assert record.stream_id == "s1"
        assert record.ttl_minutes == 30

    @pytest.mark.asyncio
    async def test_reuses_valid_record(self, provider: FakeProvider, store: BroadcastStore):
        store.save(_record("part"))
        provider.privacy["old"] = "unlisted"
        manager = BroadcastReuseManager(provider, store)

        info = await manager.get_or_create_broadcast("Title", "part")

        assert info.broadcast_id == "old"
        assert info.stream_key == "key-old"
        assert provider.created == 0

    @pytest.mark.asyncio
    async def test_public_broadcast_is_not_reused(self, provider: FakeProvider, store: BroadcastStore):
        store.save(_record("part"))
        provider.privacy["old"] = "public"
        manager = BroadcastReuseManager(provider, store)

        info = await manager.get_or_create_broadcast("Title", "part")

        assert info.broadcast_id == "b1"
        assert store.get("part").broadcast_id == "b1"

    @pytest.mark.asyncio
    async def test_completed_broadcast_is_not_reused(self, provider: FakeProvider, store: BroadcastStore):
        store.save(_record("part"))
        provider.privacy["old"] = "unlisted"
        provider.lifecycle["old"] = "complete"
        manager = BroadcastReuseManager(provider, store)

        info = await manager.get_or_create_broadcast("Title", "part")

        assert info.broadcast_id == "b1"
        assert store.get("part").broadcast_id == "b1"

    @pytest.mark.asyncio
    async def test_forget_drops_record_after_end(self, provider: FakeProvider, store: BroadcastStore):
        manager = BroadcastReuseManager(provider, store)
        first = await manager.get_or_create_broadcast("Title", "part")
        await provider.end_broadcast(first.broadcast_id)

        assert manager.forget(first.broadcast_id) is True
        second = await manager.get_or_create_broadcast("Title", "part")

        assert second.broadcast_id == "b2"
        assert provider.created == 2

    @pytest.mark.asyncio
    async def test_missing_remote_broadcast_is_replaced(self, provider: FakeProvider, store: BroadcastStore):
        store.save(_record("part"))
        manager = BroadcastReuseManager(provider, store)

        info = await manager.get_or_create_broadcast("Title", "part")

        assert info.broadcast_id == "b1"

    @pytest.mark.asyncio
    async def test_expired_record_is_replaced(self, provider: FakeProvider, store: BroadcastStore):
        store.save(_record("part", age_minutes=120, ttl=60))
        provider.privacy["old"] = "unlisted"
        manager = BroadcastReuseManager(provider, store)

        info = await manager.get_or_create_broadcast("Title", "part")

        assert info.broadcast_id == "b1"
        assert provider.count("get_broadcast_privacy") == 0

    @pytest.mark.asyncio
    async def test_disabled_always_creates(self, provider: FakeProvider, store: BroadcastStore):
        store.save(_record("part"))
        provider.privacy["old"] = "unlisted"
        manager = BroadcastReuseManager(provider, store, ReuseConfig(enabled=False))

        info = await manager.get_or_create_broadcast("Title", "part")

        assert info.broadcast_id == "b1"

    @pytest.mark.asyncio
    async def test_authentication_failure_raises(self, provider: FakeProvider, store: BroadcastStore):
        provider.authenticated = False
        manager = BroadcastReuseManager(provider, store)

        with pytest.raises(AuthenticationError):
            await manager.get_or_create_broadcast("Title", "part")
        assert store.get("part") is None

    @pytest.mark.asyncio
    async def test_concurrent_calls_create_once(self, provider: FakeProvider, store: BroadcastStore):
        provider.create_delay = 0.05
        manager = BroadcastReuseManager(provider, store)

        results = await asyncio.gather(
            manager.get_or_create_broadcast("Title", "part"),
            manager.get_or_create_broadcast("Title", "part"),
        )

        assert provider.created == 1
        assert {r.broadcast_id for r in results} == {"b1"}
