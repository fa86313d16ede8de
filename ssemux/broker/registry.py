"""
MODULE OVERVIEW:
One broker per upstream URL, shared by every session that asks for that URL.

WHAT IS HAPPENING HERE:
Instead of a module-level singleton, the caller owns a registry. `lease(url)`
hands out the broker for that URL, creating and starting it on first use.
Each lease is released exactly once; when the last lease for a URL goes, the
broker is stopped and forgotten. Lease counting is synchronous, so a new lease
taken while an old broker is shutting down always gets a fresh broker.
"""
import asyncio
from typing import Callable

from loguru import logger

from ssemux.broker.broker import Broker


class BrokerRegistry:
    def __init__(self, broker_factory: Callable[[str], Broker] | None = None):
        self._broker_factory = broker_factory or (lambda url: Broker(name=url))
        self._brokers: dict[str, Broker] = {}
        self._leases: dict[str, int] = {}

    def lease(self, url: str) -> Broker:
        broker = self._brokers.get(url)
        if broker is None:
            broker = self._broker_factory(url).start()
            self._brokers[url] = broker
            self._leases[url] = 0
            logger.info(f"url={url} event=broker_created brokers={len(self._brokers)}")
        self._leases[url] += 1
        return broker

    async def release(self, url: str) -> None:
        if url not in self._leases:
            logger.warning(f"url={url} event=release reason=unknown_url")
            return

        self._leases[url] -= 1
        if self._leases[url] > 0:
            return

        broker = self._brokers.pop(url)
        del self._leases[url]
        logger.info(f"url={url} event=broker_destroyed reason=last_lease brokers={len(self._brokers)}")
        await broker.stop()

    def get(self, url: str) -> Broker | None:
        return self._brokers.get(url)

    def leases(self, url: str) -> int:
        return self._leases.get(url, 0)

    async def aclose(self) -> None:
        brokers = list(self._brokers.values())
        self._brokers.clear()
        self._leases.clear()
        if brokers:
            await asyncio.gather(*(b.stop() for b in brokers), return_exceptions=True)

    def __contains__(self, url: str) -> bool:
        return url in self._brokers

    def __len__(self) -> int:
        return len(self._brokers)
