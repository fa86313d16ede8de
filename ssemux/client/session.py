"""
MODULE OVERVIEW:
The per-consumer view of a shared stream.

WHAT IS HAPPENING HERE:
A session never touches the connection. It attaches a channel to a broker,
reads notifications from it in a background task, and mirrors them into plain
attributes (status, last_event, events, error, retry_count). Its controls
(connect / close / reconnect) are just requests posted to the broker.

One subtle rule: after `close()` the session wipes its local state at once and
then ignores everything the broker sends until the broker confirms the close
(STATUS closed). Notifications already in flight before the close would
otherwise bring the wiped state back.
"""
import asyncio
from collections import deque
from contextlib import suppress
from typing import Any, Awaitable, Callable
from uuid import uuid4

from loguru import logger

from ssemux.broker.broker import Broker
from ssemux.broker.channel import SubscriberChannel
from ssemux.shared.config import settings
from ssemux.shared.models import (
    ConnectedNotification,
    ConnectionOptions,
    ConnectionStatus,
    DisconnectedNotification,
    ErrorInfo,
    ErrorNotification,
    EventNotification,
    LastEventNotification,
    Notification,
    RetryCountNotification,
    SessionState,
    StatusNotification,
    StreamEvent,
)


def make_subscriber_id() -> str:
    return f"client-{uuid4().hex[:8]}"


class SessionHandle:
    def __init__(
        self,
        broker: Broker,
        url: str | None = None,
        options: ConnectionOptions | dict[str, Any] | None = None,
        subscriber_id: str | None = None,
        max_events: int | None = None,
        on_release: Callable[[], Awaitable[None]] | None = None,
    ):
        self.broker = broker
        self.url = url
        self.options = ConnectionOptions.coerce(options)
        self.subscriber_id = subscriber_id or make_subscriber_id()

        self.status: ConnectionStatus = "disconnected"
        self.last_event: StreamEvent | None = None
        self.events: deque[StreamEvent] = deque(maxlen=max_events or settings.EVENT_BUFFER_CAPACITY)
        self.error: ErrorInfo | None = None
        self.retry_count = 0
        self.events_received = 0

        self._on_release = on_release
        self._channel: SubscriberChannel | None = None
        self._pump_task: asyncio.Task | None = None
        self._auto_connect_task: asyncio.Task | None = None
        self._awaiting_close_ack = False
        self._released = False
        self._changed = asyncio.Event()

    # ==========================
    # LIFECYCLE
    # ==========================
    async def open(self) -> "SessionHandle":
        if self._channel is not None:
            return self

        self._channel = self.broker.attach(self.subscriber_id)
        self.broker.subscribe(self.subscriber_id)
        self._pump_task = asyncio.create_task(self._pump(), name=f"ssemux-session:{self.subscriber_id}")

        if self.options.mode == "auto" and self.url:
            delay_ms = self.options.auto_connect_delay_ms
            if delay_ms > 0:
                self._auto_connect_task = asyncio.create_task(self._connect_later(delay_ms))
            else:
                self.connect()
        return self

    async def aclose(self) -> None:
        """Leave the broker for good. The upstream stays up for the other sessions."""
        if self._released:
            return
        self._released = True
        self._cancel_auto_connect()

        if self._channel is not None:
            self.broker.unsubscribe(self.subscriber_id)
            self.broker.detach(self.subscriber_id)
        if self._pump_task is not None:
            self._pump_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._pump_task

        if self._on_release is not None:
            await self._on_release()
        logger.debug(f"subscriber={self.subscriber_id} event=released")

    async def __aenter__(self) -> "SessionHandle":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ==========================
    # CONTROLS
    # ==========================
    def connect(self, url: str | None = None, options: ConnectionOptions | dict[str, Any] | None = None) -> None:
        self._cancel_auto_connect()
        if url is not None:
            self.url = url
        if options is not None:
            self.options = ConnectionOptions.coerce(options)
        if self.url is None:
            raise ValueError("connect() needs a url")
        self.broker.request_connect(self.url, self.options)

    def close(self) -> None:
        self._cancel_auto_connect()
        self._clear_local()
        self.status = "closed"
        self._awaiting_close_ack = True
        self._changed.set()
        self.broker.request_disconnect()

    def reconnect(self) -> None:
        self.error = None
        self._changed.set()
        self.broker.request_reconnect()

    def pause(self) -> None:
        self.broker.unsubscribe(self.subscriber_id)

    def resume(self) -> None:
        # the broker replays its whole history on subscribe
        self.events.clear()
        self.broker.subscribe(self.subscriber_id)

    # ==========================
    # PROJECTION
    # ==========================
    def apply(self, notification: Notification) -> None:
        if self._awaiting_close_ack:
            if isinstance(notification, StatusNotification) and notification.status == "closed":
                self._awaiting_close_ack = False
            return

        if isinstance(notification, StatusNotification):
            self.status = notification.status
            if notification.status == "connected":
                self.error = None
        elif isinstance(notification, EventNotification):
            self.last_event = notification.event
            self.events.append(notification.event)
            self.events_received += 1
        elif isinstance(notification, LastEventNotification):
            self.last_event = notification.event
        elif isinstance(notification, ErrorNotification):
            self.error = notification.error
        elif isinstance(notification, RetryCountNotification):
            self.retry_count = notification.count
        elif isinstance(notification, ConnectedNotification):
            self.url = notification.url
        elif isinstance(notification, DisconnectedNotification):
            self.status = "disconnected"
            self.events.clear()
            self.last_event = None

        self._changed.set()

    def snapshot(self) -> SessionState:
        return SessionState(
            url=self.url,
            status=self.status,
            last_event=self.last_event,
            events=list(self.events),
            error=self.error,
            retry_count=self.retry_count,
        )

    async def wait_until(
        self, predicate: Callable[["SessionHandle"], bool], timeout: float | None = None
    ) -> "SessionHandle":
        async def _wait():
            while not predicate(self):
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(_wait(), timeout)
        return self

    async def wait_for_status(self, *statuses: ConnectionStatus, timeout: float | None = None) -> "SessionHandle":
        return await self.wait_until(lambda s: s.status in statuses, timeout)

    # ==========================
    # INTERNALS
    # ==========================
    async def _pump(self) -> None:
        async for notification in self._channel:
            self.apply(notification)
        logger.debug(f"subscriber={self.subscriber_id} event=channel_closed")
        self._changed.set()

    async def _connect_later(self, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000.0)
        self._auto_connect_task = None
        self.connect()

    def _cancel_auto_connect(self) -> None:
        task = self._auto_connect_task
        self._auto_connect_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _clear_local(self) -> None:
        self.events.clear()
        self.last_event = None
        self.error = None
        self.retry_count = 0
