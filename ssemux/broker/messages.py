"""
Everything that goes INTO a broker's inbox.

Requests come from sessions. Transport signals and retry timers come from the
tasks the state machine spawns. All of them are handled one at a time by the
broker loop, which is the only code allowed to mutate broker state.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Union

from ssemux.broker.channel import SubscriberChannel
from ssemux.client.transport import TransportSignal
from ssemux.shared.models import ConnectionOptions


# ==========================
# SESSION REQUESTS
# ==========================
@dataclass(frozen=True)
class AttachRequest:
    subscriber_id: str
    channel: SubscriberChannel


@dataclass(frozen=True)
class DetachRequest:
    subscriber_id: str


@dataclass(frozen=True)
class SubscribeRequest:
    subscriber_id: str


@dataclass(frozen=True)
class UnsubscribeRequest:
    subscriber_id: str


@dataclass(frozen=True)
class ConnectRequest:
    url: str
    options: ConnectionOptions | dict[str, Any] | None = None


@dataclass(frozen=True)
class DisconnectRequest:
    pass


@dataclass(frozen=True)
class ReconnectRequest:
    pass


# ==========================
# INTERNAL
# ==========================
@dataclass(frozen=True)
class TransportMessage:
    generation: int
    signal: TransportSignal


@dataclass(frozen=True)
class RetryDue:
    generation: int


@dataclass(frozen=True)
class Barrier:
    """Resolved once every message queued before it has been handled."""

    done: asyncio.Future = field(compare=False)


@dataclass(frozen=True)
class StopRequest:
    pass


BrokerRequest = Union[
    AttachRequest,
    DetachRequest,
    SubscribeRequest,
    UnsubscribeRequest,
    ConnectRequest,
    DisconnectRequest,
    ReconnectRequest,
]

BrokerMessage = Union[BrokerRequest, TransportMessage, RetryDue, Barrier, StopRequest]
