"""
Rate Limiter - relay call pacing and 429 backoff.

The relay's abuse control is account-wide, so a single throttle instance is
shared by every relay call regardless of which regional endpoint it targets.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class MinIntervalThrottle:
    """Enforces a minimum spacing between consecutive relay calls."""

    def __init__(
        self,
        min_interval_seconds: float,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        if min_interval_seconds < 0:
            raise ValueError("min_interval_seconds must be >= 0")
        self.min_interval = min_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._last_call_at: Optional[float] = None
        self._lock = asyncio.Lock()
        self.total_wait = 0.0

    @property
    def last_call_at(self) -> Optional[float]:
        return self._last_call_at

    async def wait(self) -> float:
        """Sleep out the remainder of the floor, then stamp the call time.

        Returns the number of seconds slept.
        """
        async with self._lock:
            waited = 0.0
            if self._last_call_at is not None:
                remaining = self._last_call_at + self.min_interval - self._clock()
                if remaining > 0:
                    logger.debug(f"Relay throttle: sleeping {remaining * 1000:.0f}ms")
                    await self._sleep(remaining)
                    waited = remaining
            self._last_call_at = self._clock()
            self.total_wait += waited
            return waited


@dataclass(frozen=True)
class BackoffPolicy:
    """Backoff applied on HTTP 429, on top of the shared throttle."""
    base_delay: float = 0.6
    growth_factor: float = 1.7
    max_delay: float = 3.0
    jitter_window: Tuple[float, float] = (0.15, 0.40)
    max_retries: int = 3

    def grow(self, delay: float) -> float:
        return min(delay * self.growth_factor, self.max_delay)

    def jitter(self, rng: random.Random) -> float:
        low, high = self.jitter_window
        return rng.uniform(low, high)

    def retry_wait(self, delay: float, floor: float, rng: random.Random) -> float:
        """``max(floor, delay) + jitter`` for one 429 retry."""
        return max(floor, delay) + self.jitter(rng)

    @property
    def upper_bound(self) -> float:
        """Largest wait a single retry can produce (ignoring the floor)."""
        return self.max_delay + self.jitter_window[1]
