"""In-memory transports and small async helpers shared by the broker, state machine and session tests."""

import asyncio
from typing import Callable, Iterable

import httpx

from ssemux.broker.channel import SubscriberChannel
from ssemux.client.transport import Closed, Frame, Opened, Transport, TransportSignal
from ssemux.shared.errors import ChannelClosedError, StreamEndedError, TransportOpenError
from ssemux.shared.models import ConnectionOptions

URL = "http://feed.test/sse"

_WAKE = object()


def sse(data: str, event: str | None = None, id: str | None = None) -> Frame:
    """Build one complete wire record as a single Frame."""
    lines = []
    if event is not None:
        lines.append(f"event: {event}")
    if id is not None:
        lines.append(f"id: {id}")
    lines.append(f"data: {data}")
    return Frame(("\n".join(lines) + "\n\n").encode())


def ended() -> Closed:
    return Closed(StreamEndedError("Stream ended unexpectedly"))


def refused() -> Closed:
    return Closed(TransportOpenError("Connection failed: refused"))


class ScriptedTransport(Transport):
    """
    Plays back a list of signals, then holds the stream open until more are
    pushed or `stop()` is called. A `Closed` signal ends the stream.
    """

    variant = "scripted"

    def __init__(self, url: str, options: ConnectionOptions, script: Iterable[TransportSignal] = ()):
        super().__init__(url, options)
        self._signals: asyncio.Queue = asyncio.Queue()
        self.started = False
        self.push(*script)

    def request_headers(self) -> httpx.Headers:
        return httpx.Headers()

    def push(self, *signals: TransportSignal) -> None:
        for signal in signals:
            self._signals.put_nowait(signal)

    def stop(self) -> None:
        super().stop()
        self._signals.put_nowait(_WAKE)

    async def stream(self):
        self.started = True
        while not self.stopped:
            signal = await self._signals.get()
            if signal is _WAKE or self.stopped:
                return
            yield signal
            if isinstance(signal, Closed):
                return


class TransportScript:
    """
    Transport factory that hands out one ScriptedTransport per connection
    attempt. Attempts past the given scripts get `default` (refused by default).
    """

    def __init__(self, *scripts: list[TransportSignal], default: list[TransportSignal] | None = None):
        self._scripts = list(scripts)
        self._default = default if default is not None else [refused()]
        self.transports: list[ScriptedTransport] = []

    def __call__(self, url: str, options: ConnectionOptions) -> ScriptedTransport:
        script = self._scripts.pop(0) if self._scripts else self._default
        transport = ScriptedTransport(url, options, script)
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> ScriptedTransport:
        return self.transports[-1]


def fast_options(**overrides) -> ConnectionOptions:
    values = {"initial_retry_delay_ms": 1, "max_retry_delay_ms": 5, "max_retries": 2}
    values.update(overrides)
    return ConnectionOptions(**values)


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


async def drain(channel: SubscriberChannel) -> list:
    """Everything currently queued on a channel, without waiting for more."""
    items = []
    while channel.qsize():
        try:
            items.append(await channel.receive())
        except ChannelClosedError:
            break
    return items


def of_type(notifications: list, kind: str) -> list:
    return [n for n in notifications if n.type == kind]
