"""
MODULE OVERVIEW:
The outbound pipe from a broker to one subscriber.

WHAT IS HAPPENING HERE:
The broker loop must never wait on a consumer. `send()` is synchronous and
never blocks: when the queue is full we drop the OLDEST notification to make
room (drop head), count it, and move on. A slow session loses some history
but cannot stall delivery to everybody else.

`close()` pushes an end marker behind whatever is still queued, so the reader
drains pending notifications first and then gets `ChannelClosedError`.
"""
import asyncio
from typing import AsyncIterator

from loguru import logger

from ssemux.shared.config import settings
from ssemux.shared.errors import ChannelClosedError
from ssemux.shared.models import Notification

_END = object()


class SubscriberChannel:
    def __init__(self, maxsize: int | None = None, name: str = "channel"):
        maxsize = settings.CHANNEL_MAXSIZE if maxsize is None else maxsize
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got {maxsize}")
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _make_room(self) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning(f"subscriber={self.name} event=dropped reason=queue_full dropped_total={self.dropped}")

    def send(self, notification: Notification) -> None:
        if self._closed:
            raise ChannelClosedError(f"channel {self.name} is closed")
        self._make_room()
        self._queue.put_nowait(notification)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._make_room()
        self._queue.put_nowait(_END)

    async def receive(self) -> Notification:
        item = await self._queue.get()
        if item is _END:
            # leave the marker in place for any later reader
            self._queue.put_nowait(_END)
            raise ChannelClosedError(f"channel {self.name} is closed")
        return item

    def __aiter__(self) -> AsyncIterator[Notification]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Notification]:
        while True:
            try:
                yield await self.receive()
            except ChannelClosedError:
                return

    def qsize(self) -> int:
        return self._queue.qsize()
