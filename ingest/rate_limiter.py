import asyncio
import time
from typing import Callable


class RateLimiter:
    """Token bucket with continuous refill shared by all gateway requests."""

    def __init__(self, max_per_sec: float = 10, clock: Callable[[], float] = time.monotonic):
        if max_per_sec <= 0:
            raise ValueError("max_per_sec must be positive")
        self.max_tokens = float(max_per_sec)
        self.refill_rate = float(max_per_sec)
        self._clock = clock
        self._tokens = self.max_tokens
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self) -> None:
        async with self._lock:
            self._refill()
            if self._tokens < 1:
                wait_s = (1 - self._tokens) / self.refill_rate
                await asyncio.sleep(wait_s)
                self._refill()
            self._tokens -= 1

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.max_tokens, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now
