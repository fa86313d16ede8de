"""
MODULE OVERVIEW:
The glue between a consumer and the core.

WHAT IS HAPPENING HERE:
`open_session()` picks a topology and hands back a ready session:
  - shared:  lease the broker for this URL from a BrokerRegistry, so every
             session on the same URL rides one upstream connection.
  - private: spin up a broker just for this session and stop it on release.
The core behaves identically either way. Each session gets exactly one
attach on open and one detach on `aclose()`.
"""
from typing import Any

from loguru import logger

from ssemux.broker.broker import Broker
from ssemux.broker.registry import BrokerRegistry
from ssemux.client.session import SessionHandle
from ssemux.client.support import shared_broker_supported
from ssemux.shared.models import ConnectionOptions


async def open_session(
    url: str,
    options: ConnectionOptions | dict[str, Any] | None = None,
    *,
    registry: BrokerRegistry | None = None,
    shared: bool | None = None,
    subscriber_id: str | None = None,
) -> SessionHandle:
    options = ConnectionOptions.coerce(options)
    if shared is None:
        shared = registry is not None and shared_broker_supported()

    if shared:
        if registry is None:
            raise ValueError("a shared session needs a BrokerRegistry")
        broker = registry.lease(url)

        async def release() -> None:
            await registry.release(url)
    else:
        broker = Broker(name=url).start()
        release = broker.stop

    logger.debug(f"url={url} event=open_session topology={'shared' if shared else 'private'}")
    session = SessionHandle(broker, url, options, subscriber_id=subscriber_id, on_release=release)
    return await session.open()
