"""
Live audio fan-out bus.

One producer (the MP3 encoder pump) publishes byte chunks; any number of
listeners subscribe and read from their own bounded queue. Publishing never
blocks: a full queue drops its oldest chunk, and a listener that has not read
anything for ``stall_timeout`` seconds while full is dropped and closed.

All methods run on the event loop thread, so the subscriber table is only
ever mutated between awaits.
"""

import asyncio
import logging
import time
import uuid
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)


class Subscription:
    """A single listener's bounded chunk buffer."""

    def __init__(self, capacity: int):
        self.id = uuid.uuid4().hex[:12]
        self.capacity = capacity
        self.created_at = time.monotonic()
        self.last_read_at = self.created_at
        self.dropped_chunks = 0
        self.received_bytes = 0
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue(maxsize=capacity)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, chunk: bytes) -> bool:
        """
        Enqueue without blocking, dropping the oldest chunk when full.

        Returns False if the subscription is closed.
        """
        if self._closed:
            return False
        try:
            self._queue.put_nowait(chunk)
            return True
        except asyncio.QueueFull:
            pass

        try:
            self._queue.get_nowait()
            self.dropped_chunks += 1
        except asyncio.QueueEmpty:
            pass

        try:
            self._queue.put_nowait(chunk)
            return True
        except asyncio.QueueFull:
            return False

    def close(self) -> bool:
        """Close the buffer. Returns True only on the first call."""
        if self._closed:
            return False
        self._closed = True
        # Make room for the end marker so the reader always wakes up
        while True:
            try:
                self._queue.put_nowait(None)
                break
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
        return True

    async def get(self) -> Optional[bytes]:
        """Next chunk, or None once closed and drained."""
        chunk = await self._queue.get()
        self.last_read_at = time.monotonic()
        if chunk is not None:
            self.received_bytes += len(chunk)
        return chunk

    def is_full(self) -> bool:
        return self._queue.full()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.get()
            if chunk is None:
                return
            yield chunk


class AudioBus:
    """
    Single-producer, multi-subscriber lossy byte fan-out.

    New subscribers start at the live edge: they only see chunks published
    after ``subscribe`` returns.
    """

    def __init__(self, capacity: int = 64, stall_timeout: float = 10.0):
        self.capacity = capacity
        self.stall_timeout = stall_timeout
        self._subscribers: dict[str, Subscription] = {}
        self._broadcasted_bytes = 0
        self._published_chunks = 0

    def publish(self, chunk: bytes) -> None:
        """Deliver a chunk to every subscriber without blocking."""
        if not chunk:
            return

        self._broadcasted_bytes += len(chunk)
        self._published_chunks += 1

        now = time.monotonic()
        for sub in list(self._subscribers.values()):
            if sub.is_full() and now - sub.last_read_at > self.stall_timeout:
                logger.info(
                    f"Dropping stalled audio subscriber {sub.id} "
                    f"(no reads for {now - sub.last_read_at:.1f}s)"
                )
                self._remove(sub)
                continue
            if not sub.offer(chunk):
                self._remove(sub)

    def subscribe(self) -> Subscription:
        """Register a new listener at the live edge."""
        sub = Subscription(self.capacity)
        self._subscribers[sub.id] = sub
        logger.debug(f"Audio subscriber {sub.id} joined, total: {len(self._subscribers)}")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Remove and close a listener. Safe to call more than once."""
        self._remove(sub)

    async def stream(self, sub: Optional[Subscription] = None) -> AsyncIterator[bytes]:
        """
        Iterate a subscription, removing it when the consumer stops.

        Cancelling the consuming task removes the subscriber.
        """
        sub = sub or self.subscribe()
        try:
            async for chunk in sub:
                yield chunk
        finally:
            self._remove(sub)

    def close_all(self) -> int:
        """Close every subscriber. Returns how many were closed."""
        subs = list(self._subscribers.values())
        for sub in subs:
            self._remove(sub)
        if subs:
            logger.info(f"Closed {len(subs)} audio subscribers")
        return len(subs)

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def broadcasted_bytes(self) -> int:
        return self._broadcasted_bytes

    @property
    def published_chunks(self) -> int:
        return self._published_chunks

    def _remove(self, sub: Subscription) -> None:
        removed = self._subscribers.pop(sub.id, None)
        sub.close()
        if removed is not None:
            logger.debug(
                f"Audio subscriber {sub.id} left, remaining: {len(self._subscribers)}, "
                f"dropped chunks: {sub.dropped_chunks}"
            )
