"""
MODULE OVERVIEW:
The connect / retry state machine for one upstream URL.

WHAT IS HAPPENING HERE:
    disconnected --connect()--> connecting --opened--> connected
    connecting|connected --closed, retries left--> error --(backoff)--> connecting
    connecting|connected --closed, no retries left--> error --> disconnected
    connecting|connected --401--> disconnected            (never retried)
    any --close()--> closed                               (until a fresh connect())

This object never awaits anything itself. It is driven by the broker loop:
requests come in as method calls, and the transport task and the retry timer
only *post* messages back into the broker inbox. Every transport and timer is
stamped with a generation number. Tearing a connection down bumps the
generation, so anything still in flight from the old connection is recognised
and dropped when it finally arrives.
"""
import asyncio
from contextlib import aclosing
from typing import Any, Callable

from loguru import logger

from ssemux.broker.buffer import EventBuffer
from ssemux.broker.messages import BrokerMessage, RetryDue, TransportMessage
from ssemux.client.backoff import BackoffPolicy
from ssemux.client.decoder import FrameDecoder
from ssemux.client.transport import Closed, Frame, Opened, Transport, select_transport
from ssemux.shared.errors import StreamEndedError, TransportError, TransportOpenError, TransportReadError
from ssemux.shared.models import (
    ConnectedNotification,
    ConnectionOptions,
    ConnectionStatus,
    DisconnectedNotification,
    ErrorInfo,
    ErrorNotification,
    EventNotification,
    Notification,
    RetryCountNotification,
    StatusNotification,
    StreamEvent,
)

TransportFactory = Callable[[str, ConnectionOptions], Transport]
BackoffFactory = Callable[[ConnectionOptions], BackoffPolicy]


class ConnectionStateMachine:
    def __init__(
        self,
        buffer: EventBuffer,
        notify: Callable[[Notification], None],
        post: Callable[[BrokerMessage], None],
        transport_factory: TransportFactory = select_transport,
        backoff_factory: BackoffFactory = BackoffPolicy.from_options,
        name: str = "broker",
    ):
        self.buffer = buffer
        self.name = name
        self._notify = notify
        self._post = post
        self._transport_factory = transport_factory
        self._backoff_factory = backoff_factory

        self.status: ConnectionStatus = "disconnected"
        self.url: str | None = None
        self.options: ConnectionOptions | None = None
        self.retry_count = 0
        self.error: ErrorInfo | None = None
        self.last_event: StreamEvent | None = None
        self.last_delay_ms: float | None = None

        self._generation = 0
        self._backoff: BackoffPolicy | None = None
        self._decoder: FrameDecoder | None = None
        self._transport: Transport | None = None
        self._transport_task: asyncio.Task | None = None
        self._retry_task: asyncio.Task | None = None
        # transport pumps and retry timers still alive; awaited on shutdown
        self._tasks: set[asyncio.Task] = set()

    @property
    def has_connection(self) -> bool:
        return self.url is not None and self.status != "closed"

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    @property
    def transport_open(self) -> bool:
        return self._transport is not None

    # ==========================
    # REQUESTS (called by the broker loop)
    # ==========================
    def connect(self, url: str, options: ConnectionOptions | dict[str, Any] | None = None) -> None:
        options = ConnectionOptions.coerce(options)

        live = self.status in ("connecting", "connected") or (self.status == "error" and self.retry_pending)
        if url == self.url and live:
            logger.debug(f"broker={self.name} url={url} event=connect reason=already_active")
            self._notify(ConnectedNotification(url=url))
            self._notify(StatusNotification(status=self.status))
            return

        if self.transport_open or self.retry_pending:
            logger.info(f"broker={self.name} url={self.url} event=teardown reason=new_target target={url}")
            self._teardown()
            self._notify(DisconnectedNotification())

        self._forget_history()
        self.retry_count = 0
        self.url = url
        self.options = options
        self._backoff = self._backoff_factory(options)

        self._notify(ConnectedNotification(url=url))
        self._open()

    def close(self) -> None:
        self._teardown()
        self._forget_history()
        self.retry_count = 0
        logger.info(f"broker={self.name} url={self.url} event=close reason=requested")
        self._notify(DisconnectedNotification())
        self._set_status("closed")

    def reconnect(self) -> None:
        if self.url is None or self.status == "closed":
            logger.warning(f"broker={self.name} event=reconnect reason=no_connection status={self.status}")
            return

        self._teardown()
        self._forget_history()
        self.retry_count = 0
        logger.info(f"broker={self.name} url={self.url} event=reconnect reason=requested")
        self._notify(RetryCountNotification(count=0))
        self._open()

    async def shutdown(self) -> None:
        """Release the transport and timer without announcing anything."""
        self._teardown()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ==========================
    # SIGNALS (posted by our own tasks)
    # ==========================
    def handle_transport(self, message: TransportMessage) -> None:
        if message.generation != self._generation:
            logger.debug(f"broker={self.name} event=stale_signal generation={message.generation}")
            return

        signal = message.signal
        if isinstance(signal, Opened):
            self._on_opened()
        elif isinstance(signal, Frame):
            self._on_frame(signal.data)
        elif isinstance(signal, Closed):
            self._on_closed(signal.error)

    def handle_retry_due(self, message: RetryDue) -> None:
        if message.generation != self._generation or self.status != "error":
            return
        self._retry_task = None
        logger.info(f"broker={self.name} url={self.url} event=retry attempt={self.retry_count}")
        self._open()

    # ==========================
    # TRANSITIONS
    # ==========================
    def _set_status(self, status: ConnectionStatus) -> None:
        self.status = status
        logger.debug(f"broker={self.name} url={self.url} event=status status={status}")
        self._notify(StatusNotification(status=status))

    def _open(self) -> None:
        self._generation += 1
        generation = self._generation

        self._set_status("connecting")
        self._decoder = FrameDecoder()
        try:
            self._transport = self._transport_factory(self.url, self.options)
        except Exception as e:
            logger.exception(f"broker={self.name} url={self.url} event=transport_setup_failed generation={generation}")
            self._on_closed(TransportOpenError(f"Transport setup failed: {e}"))
            return
        self._transport_task = self._spawn(
            self._pump(self._transport, generation),
            name=f"ssemux-transport:{self.name}:{generation}",
        )

    def _on_opened(self) -> None:
        if self.status != "connecting":
            return
        self.retry_count = 0
        self.error = None
        logger.info(f"broker={self.name} url={self.url} event=connected")
        self._set_status("connected")
        self._notify(RetryCountNotification(count=0))

    def _on_frame(self, data: bytes) -> None:
        if self.status != "connected" or self._decoder is None:
            return
        for event in self._decoder.feed(data):
            self._deliver(event)

    def _on_closed(self, error: TransportError) -> None:
        if isinstance(error, StreamEndedError) and self.status == "connected" and self._decoder is not None:
            for event in self._decoder.flush():
                self._deliver(event)

        self._release_transport()
        self.error = ErrorInfo.from_exception(error)

        if not error.retryable:
            logger.warning(f"broker={self.name} url={self.url} event=auth_failed reason='{error}'")
            self._forget_history(keep_error=True)
            self._set_status("disconnected")
            self._notify(ErrorNotification(error=self.error))
            return

        logger.warning(f"broker={self.name} url={self.url} event=error kind={error.kind} reason='{error}'")
        self._notify(ErrorNotification(error=self.error))
        self._set_status("error")

        options = self.options
        if options.auto_reconnect and self.retry_count < options.max_retries:
            self.retry_count += 1
            self._notify(RetryCountNotification(count=self.retry_count))
            self._schedule_retry(self._backoff.delay(self.retry_count - 1))
        else:
            logger.warning(
                f"broker={self.name} url={self.url} event=give_up retries={self.retry_count} "
                f"auto_reconnect={options.auto_reconnect}"
            )
            self._forget_history(keep_error=True)
            self._set_status("disconnected")

    def _deliver(self, event: StreamEvent) -> None:
        self.buffer.push(event)
        self.last_event = event
        self._notify(EventNotification(event=event))

    # ==========================
    # TASKS AND CLEANUP
    # ==========================
    def _schedule_retry(self, delay_ms: float) -> None:
        self.last_delay_ms = delay_ms
        logger.info(
            f"broker={self.name} url={self.url} event=retry_scheduled attempt={self.retry_count} delay_ms={delay_ms:.0f}"
        )
        self._retry_task = self._spawn(
            self._retry_after(delay_ms, self._generation),
            name=f"ssemux-retry:{self.name}:{self._generation}",
        )

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _retry_after(self, delay_ms: float, generation: int) -> None:
        await asyncio.sleep(delay_ms / 1000.0)
        self._post(RetryDue(generation))

    async def _pump(self, transport: Transport, generation: int) -> None:
        try:
            async with aclosing(transport.stream()) as signals:
                async for signal in signals:
                    if transport.stopped:
                        break
                    self._post(TransportMessage(generation, signal))
        except asyncio.CancelledError:
            logger.debug(f"broker={self.name} event=transport_cancelled generation={generation}")
            raise
        except Exception as e:
            logger.exception(f"broker={self.name} event=transport_crashed generation={generation}")
            self._post(TransportMessage(generation, Closed(TransportReadError(f"Transport failed: {e}"))))

    def _release_transport(self) -> None:
        if self._transport is not None:
            self._transport.stop()
        self._transport = None
        self._transport_task = None
        self._decoder = None

    def _teardown(self) -> None:
        self._generation += 1
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None
        task = self._transport_task
        self._release_transport()
        if task is not None and not task.done():
            task.cancel()

    def _forget_history(self, keep_error: bool = False) -> None:
        self.buffer.clear()
        self.last_event = None
        if not keep_error:
            self.error = None
