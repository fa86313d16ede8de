"""
MODULE OVERVIEW:
The broker: one upstream connection, many subscribers.

WHAT IS HAPPENING HERE:
This is the fan-out hub. It owns the connection state machine, the event
history and the subscriber registry, and it is the ONLY code that touches them.
Everybody else (sessions, the transport task, the retry timer) talks to it by
dropping a message into its inbox. A single asyncio task drains that inbox one
message at a time, so two transitions can never race each other and no lock
is needed.

When an event comes in, it is appended to the history buffer and fanned out to
every subscribed session's channel. A late joiner gets primed on attach and gets
the whole history replayed on subscribe, then live events from there on.
"""
import asyncio
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from loguru import logger

from ssemux.broker.buffer import EventBuffer
from ssemux.broker.channel import SubscriberChannel
from ssemux.broker.messages import (
    AttachRequest,
    Barrier,
    BrokerMessage,
    ConnectRequest,
    DetachRequest,
    DisconnectRequest,
    ReconnectRequest,
    RetryDue,
    StopRequest,
    SubscribeRequest,
    TransportMessage,
    UnsubscribeRequest,
)
from ssemux.client.backoff import BackoffPolicy
from ssemux.client.state_machine import BackoffFactory, ConnectionStateMachine, TransportFactory
from ssemux.client.transport import select_transport
from ssemux.shared.errors import ChannelClosedError
from ssemux.shared.models import (
    BrokerStats,
    ConnectedNotification,
    ConnectionOptions,
    EventNotification,
    LastEventNotification,
    Notification,
    RetryCountNotification,
    StatusNotification,
)


@dataclass
class Subscriber:
    id: str
    channel: SubscriberChannel
    # attached but paused until the consumer asks for live updates
    subscribed: bool = False


class Broker:
    def __init__(
        self,
        name: str | None = None,
        capacity: int | None = None,
        transport_factory: TransportFactory = select_transport,
        backoff_factory: BackoffFactory = BackoffPolicy.from_options,
        channel_maxsize: int | None = None,
    ):
        self.name = name or f"broker-{uuid4().hex[:6]}"
        self.buffer = EventBuffer(capacity)
        self.channel_maxsize = channel_maxsize

        self._inbox: asyncio.Queue[BrokerMessage] = asyncio.Queue()
        self._subscribers: dict[str, Subscriber] = {}
        self._task: asyncio.Task | None = None
        self._stopping = False

        self.machine = ConnectionStateMachine(
            buffer=self.buffer,
            notify=self.broadcast,
            post=self.post,
            transport_factory=transport_factory,
            backoff_factory=backoff_factory,
            name=self.name,
        )

    # ==========================
    # LIFECYCLE
    # ==========================
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "Broker":
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"ssemux-broker:{self.name}")
            logger.info(f"broker={self.name} event=start")
        return self

    async def stop(self) -> None:
        """Handle everything already queued, then release the connection and close every channel."""
        if self._stopping:
            if self._task is not None:
                await asyncio.gather(self._task, return_exceptions=True)
            return
        self._stopping = True

        if self._task is None:
            await self._shutdown()
            return
        self._inbox.put_nowait(StopRequest())
        await asyncio.gather(self._task, return_exceptions=True)

    async def __aenter__(self) -> "Broker":
        return self.start()

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ==========================
    # PUBLIC REQUESTS (safe to call from any task)
    # ==========================
    def post(self, message: BrokerMessage) -> None:
        if self._stopping and not isinstance(message, (TransportMessage, RetryDue)):
            logger.warning(f"broker={self.name} event=dropped_request reason=stopping request={type(message).__name__}")
            return
        self._inbox.put_nowait(message)

    def attach(self, subscriber_id: str | None = None, channel: SubscriberChannel | None = None) -> SubscriberChannel:
        """Register a paused subscriber. The returned channel is named after its subscriber id."""
        subscriber_id = subscriber_id or f"sub-{uuid4().hex[:8]}"
        channel = channel or SubscriberChannel(self.channel_maxsize, name=subscriber_id)
        self.post(AttachRequest(subscriber_id, channel))
        return channel

    def detach(self, subscriber_id: str) -> None:
        self.post(DetachRequest(subscriber_id))

    def subscribe(self, subscriber_id: str) -> None:
        self.post(SubscribeRequest(subscriber_id))

    def unsubscribe(self, subscriber_id: str) -> None:
        self.post(UnsubscribeRequest(subscriber_id))

    def request_connect(self, url: str, options: ConnectionOptions | dict[str, Any] | None = None) -> None:
        # validated here, in the caller's task
        self.post(ConnectRequest(url, ConnectionOptions.coerce(options)))

    def request_disconnect(self) -> None:
        self.post(DisconnectRequest())

    def request_reconnect(self) -> None:
        self.post(ReconnectRequest())

    async def flush(self) -> None:
        """Wait until every message queued before this call has been handled."""
        if not self.running:
            return
        done = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(Barrier(done))
        await done

    # ==========================
    # CENTRAL FAN-OUT
    # ==========================
    def broadcast(self, notification: Notification) -> None:
        failed = []
        # iterate over a snapshot: a failing channel is unregistered after the loop
        for subscriber in list(self._subscribers.values()):
            if subscriber.subscribed and not self._send(subscriber, notification):
                failed.append(subscriber.id)

        for subscriber_id in failed:
            self._subscribers.pop(subscriber_id, None)
            logger.info(f"broker={self.name} subscriber={subscriber_id} event=detach reason=channel_gone")

    def _send(self, subscriber: Subscriber, notification: Notification) -> bool:
        try:
            subscriber.channel.send(notification)
            return True
        except ChannelClosedError as e:
            logger.warning(f"broker={self.name} subscriber={subscriber.id} event=error reason='{e}'")
        except Exception:
            logger.exception(f"broker={self.name} subscriber={subscriber.id} event=error reason=send_failed")
        return False

    # ==========================
    # THE LOOP
    # ==========================
    async def _run(self) -> None:
        try:
            while True:
                message = await self._inbox.get()
                if isinstance(message, StopRequest):
                    break
                try:
                    self._handle(message)
                except Exception:
                    logger.exception(f"broker={self.name} event=error reason=handler_failed message={type(message).__name__}")
        except asyncio.CancelledError:
            logger.debug(f"broker={self.name} event=loop_cancelled")
            raise
        finally:
            await self._shutdown()

    def _handle(self, message: BrokerMessage) -> None:
        if isinstance(message, TransportMessage):
            self.machine.handle_transport(message)
        elif isinstance(message, RetryDue):
            self.machine.handle_retry_due(message)
        elif isinstance(message, AttachRequest):
            self._attach(message.subscriber_id, message.channel)
        elif isinstance(message, SubscribeRequest):
            self._subscribe(message.subscriber_id)
        elif isinstance(message, UnsubscribeRequest):
            self._unsubscribe(message.subscriber_id)
        elif isinstance(message, DetachRequest):
            self._detach(message.subscriber_id)
        elif isinstance(message, ConnectRequest):
            logger.info(f"broker={self.name} url={message.url} event=connect_requested")
            self.machine.connect(message.url, message.options)
        elif isinstance(message, DisconnectRequest):
            self.machine.close()
        elif isinstance(message, ReconnectRequest):
            self.machine.reconnect()
        elif isinstance(message, Barrier):
            if not message.done.done():
                message.done.set_result(None)
        else:
            logger.warning(f"broker={self.name} event=unknown_message message={message!r}")

    async def _shutdown(self) -> None:
        await self.machine.shutdown()
        for subscriber in list(self._subscribers.values()):
            subscriber.channel.close()
        self._subscribers.clear()

        # release anybody still waiting on flush()
        while not self._inbox.empty():
            message = self._inbox.get_nowait()
            if isinstance(message, Barrier) and not message.done.done():
                message.done.set_result(None)
        logger.info(f"broker={self.name} event=stop")

    # ==========================
    # SUBSCRIBER REGISTRY
    # ==========================
    def _attach(self, subscriber_id: str, channel: SubscriberChannel) -> None:
        previous = self._subscribers.get(subscriber_id)
        if previous is not None and previous.channel is not channel:
            previous.channel.close()

        subscriber = Subscriber(subscriber_id, channel)
        self._subscribers[subscriber_id] = subscriber
        logger.info(f"broker={self.name} subscriber={subscriber_id} event=attach attached={len(self._subscribers)}")

        machine = self.machine
        if machine.has_connection:
            # priming push: enough to render something before the full replay
            self._send(subscriber, ConnectedNotification(url=machine.url))
            self._send(subscriber, StatusNotification(status=machine.status))
            self._send(subscriber, RetryCountNotification(count=machine.retry_count))
            if machine.last_event is not None:
                self._send(subscriber, LastEventNotification(event=machine.last_event))

    def _subscribe(self, subscriber_id: str) -> None:
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None:
            logger.warning(f"broker={self.name} subscriber={subscriber_id} event=subscribe reason=unknown_subscriber")
            return
        subscriber.subscribed = True

        machine = self.machine
        if machine.url is not None:
            self._send(subscriber, StatusNotification(status=machine.status))
            self._send(subscriber, RetryCountNotification(count=machine.retry_count))
            history = self.buffer.snapshot()
            for event in history:
                self._send(subscriber, EventNotification(event=event))
            logger.debug(f"broker={self.name} subscriber={subscriber_id} event=replay count={len(history)}")

    def _unsubscribe(self, subscriber_id: str) -> None:
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is not None:
            subscriber.subscribed = False

    def _detach(self, subscriber_id: str) -> None:
        subscriber = self._subscribers.pop(subscriber_id, None)
        if subscriber is None:
            return
        subscriber.channel.close()
        logger.info(f"broker={self.name} subscriber={subscriber_id} event=detach attached={len(self._subscribers)}")

    # ==========================
    # METRICS
    # ==========================
    def stats(self) -> BrokerStats:
        subscribers = list(self._subscribers.values())
        return BrokerStats(
            name=self.name,
            url=self.machine.url,
            status=self.machine.status,
            attached=len(subscribers),
            subscribed=sum(1 for s in subscribers if s.subscribed),
            buffered_events=len(self.buffer),
            total_events=self.buffer.total_pushed,
            retry_count=self.machine.retry_count,
            dropped_notifications=sum(s.channel.dropped for s in subscribers),
        )
