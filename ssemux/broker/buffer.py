"""
MODULE OVERVIEW:
The broker's memory of recent events.

WHAT IS HAPPENING HERE:
A session that joins late should not start from a blank screen. The broker
keeps the last N events here and replays them to every new subscriber. Only
the broker loop touches the buffer. It is cleared whenever the connection
starts over (explicit reconnect, auth failure, giving up, close).
"""
from collections import deque
from typing import Iterator

from ssemux.shared.config import settings
from ssemux.shared.models import StreamEvent


class EventBuffer:
    """
    Fixed-capacity history of the most recent events, oldest first.
    Backed by a deque with `maxlen`, so a push into a full buffer evicts exactly
    one entry from the front instead of rebuilding the list.
    """

    def __init__(self, capacity: int | None = None):
        capacity = settings.EVENT_BUFFER_CAPACITY if capacity is None else capacity
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._events: deque[StreamEvent] = deque(maxlen=capacity)
        self.total_pushed = 0

    @property
    def capacity(self) -> int:
        return self._events.maxlen

    @property
    def latest(self) -> StreamEvent | None:
        return self._events[-1] if self._events else None

    def push(self, event: StreamEvent) -> None:
        self._events.append(event)
        self.total_pushed += 1

    def snapshot(self) -> list[StreamEvent]:
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[StreamEvent]:
        return iter(self.snapshot())
