"""
MODULE OVERVIEW:
How long to wait before the next reconnect attempt.

WHAT IS HAPPENING HERE:
When the upstream drops, every client hammering it again at once makes things
worse. So each retry waits longer than the last (doubling from the initial
delay), a random jitter spreads clients apart, and a ceiling keeps the wait
bounded. The state machine owns the attempt counter; this module only turns
an attempt number into milliseconds.
"""
import random
from typing import Callable

from ssemux.shared.config import settings
from ssemux.shared.models import ConnectionOptions

# 2**52 ms is already far beyond any sane ceiling; keeps the float math finite
_MAX_EXPONENT = 52


class BackoffPolicy:
    """
    Maps a zero-based retry attempt to a delay in milliseconds.

    Default: min(initial * 2**attempt + uniform(0, jitter), ceiling).
    A custom function replaces the exponential-plus-jitter term, but the ceiling
    is always applied here and never left to the custom function.
    """

    def __init__(
        self,
        initial_delay_ms: float = 1000,
        max_delay_ms: float = 30000,
        jitter_ms: float | None = None,
        custom: Callable[[int], float] | None = None,
        rng: Callable[[], float] = random.random,
    ):
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter_ms = settings.BACKOFF_JITTER_MS if jitter_ms is None else jitter_ms
        self.custom = custom
        self._rng = rng

    @classmethod
    def from_options(cls, options: ConnectionOptions) -> "BackoffPolicy":
        return cls(
            initial_delay_ms=options.initial_retry_delay_ms,
            max_delay_ms=options.max_retry_delay_ms,
            custom=options.retry_delay_fn,
        )

    def delay(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got {attempt}")

        if self.custom is not None:
            base = float(self.custom(attempt))
        else:
            base = self.initial_delay_ms * 2 ** min(attempt, _MAX_EXPONENT)
            base += self._rng() * self.jitter_ms

        return max(0.0, min(base, self.max_delay_ms))
