"""
Chunk Fan-out
=============

One producer, many independent consumers, each with its own bounded
channel.

Design Rules:
    - Publishing never blocks the producer
    - A full channel drops its OLDEST chunk; other subscribers are unaffected
    - Subscribers join at the live edge: no backfill
    - All subscribers see chunks in publish order
"""

import asyncio
import itertools
import logging
from typing import Dict, Optional


logger = logging.getLogger(__name__)


class SubscriberChannel:
    """
    Bounded per-subscriber queue with a drop-oldest policy.

    Attributes:
        subscriber_id: Identifier assigned by the fan-out
        maxsize: Maximum chunks held before dropping
        dropped_count: Chunks dropped because the subscriber fell behind
    """

    def __init__(self, subscriber_id: int, maxsize: int = 8) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self.subscriber_id = subscriber_id
        self.maxsize = maxsize
        self.dropped_count: int = 0
        self.received_count: int = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def size(self) -> int:
        return self._queue.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, chunk: bytes) -> bool:
        """
        Add a chunk without waiting, dropping the oldest if full.

        Returns:
            True if nothing was dropped.
        """
        if self._closed:
            return False
        dropped = False
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self.dropped_count += 1
                dropped = True
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(chunk)
        self.received_count += 1
        return not dropped

    async def get(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Next chunk, or None on timeout or once the channel is closed.
        """
        if self._closed and self._queue.empty():
            return None
        try:
            if timeout is not None:
                chunk = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            else:
                chunk = await self._queue.get()
        except asyncio.TimeoutError:
            return None
        return chunk

    def get_nowait(self) -> Optional[bytes]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        """Wake a pending reader with an end-of-stream marker."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(None)


class ChunkFanout:
    """
    Fans chunks out to every attached SubscriberChannel.

    Example:
        fanout = ChunkFanout(queue_size=8)
        channel = fanout.subscribe()
        fanout.publish(b"...")
        chunk = await channel.get()
        fanout.unsubscribe(channel)
    """

    def __init__(self, queue_size: int = 8) -> None:
        self.queue_size = queue_size
        self.bytes_published: int = 0
        self.chunks_published: int = 0
        self._subscribers: Dict[int, SubscriberChannel] = {}
        self._ids = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> SubscriberChannel:
        channel = SubscriberChannel(next(self._ids), maxsize=self.queue_size)
        self._subscribers[channel.subscriber_id] = channel
        logger.debug(f"Subscriber {channel.subscriber_id} joined ({self.subscriber_count} total)")
        return channel

    def unsubscribe(self, channel: SubscriberChannel) -> None:
        if self._subscribers.pop(channel.subscriber_id, None) is not None:
            channel.close()
            logger.debug(f"Subscriber {channel.subscriber_id} left ({self.subscriber_count} total)")

    def publish(self, chunk: bytes) -> int:
        """
        Deliver a chunk to every current subscriber.

        Returns:
            Number of subscribers the chunk was offered to.
        """
        self.bytes_published += len(chunk)
        self.chunks_published += 1
        targets = list(self._subscribers.values())
        for channel in targets:
            channel.offer(chunk)
        return len(targets)

    def close_all(self) -> None:
        for channel in list(self._subscribers.values()):
            self.unsubscribe(channel)

    def metrics(self) -> dict:
        return {
            "subscribers": self.subscriber_count,
            "bytes_published": self.bytes_published,
            "chunks_published": self.chunks_published,
            "dropped": sum(c.dropped_count for c in self._subscribers.values()),
        }
