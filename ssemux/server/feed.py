"""
MODULE OVERVIEW:
A fake upstream to point ssemux at.

WHAT IS HAPPENING HERE:
In production the upstream is somebody else's server (a price feed, a build
log, a notification stream). For local runs and demos we generate ticker
prices here, framed the way sse-starlette expects (`event`, `id`, `data`).
`count` makes the feed finite, which is handy for watching the client's
"stream ended -> back off -> retry" path.
"""
import asyncio
import json
import random
from datetime import datetime, timezone
from typing import AsyncIterator

from ssemux.shared.config import settings

SYMBOLS = ["AAPL", "NVDA", "TSLA", "MSFT", "AMZN"]


def make_tick(seq: int, prices: dict[str, float]) -> dict:
    symbol = random.choice(SYMBOLS)
    delta = random.uniform(-2.5, 2.5)
    prices[symbol] += delta
    return {
        "seq": seq,
        "ticker": symbol,
        "price": round(prices[symbol], 2),
        "delta": round(delta, 2),
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }


async def ticker_feed(count: int | None = None, interval_s: float | None = None) -> AsyncIterator[dict]:
    """Emits ticker frames forever, or `count` of them and then ends the stream."""
    interval_s = settings.FEED_INTERVAL_S if interval_s is None else interval_s
    prices = {s: random.uniform(100.0, 900.0) for s in SYMBOLS}
    seq = 0

    while count is None or seq < count:
        seq += 1
        yield {"event": "tick", "id": str(seq), "data": json.dumps(make_tick(seq, prices))}
        if count is None or seq < count:
            await asyncio.sleep(interval_s)
