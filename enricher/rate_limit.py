"""Token bucket rate limiting for worker pools."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict

LOGGER = logging.getLogger(__name__)


@dataclass
class TokenBucket:
    """Token bucket for rate limiting.

    Tokens are added at a constant rate (refill_rate per second).
    Each job consumes 1 token. When the bucket is empty, callers wait.
    """

    capacity: float  # Maximum tokens
    tokens: float  # Current tokens
    refill_rate: float  # Tokens per second
    last_refill: float  # Timestamp of last refill
    clock: Callable[[], float] = time.monotonic

    def consume(self, tokens: int = 1) -> bool:
        """Try to consume tokens. Returns True if successful, False if insufficient tokens."""
        self._refill()

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def _refill(self) -> None:
        now = self.clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def time_until_available(self, tokens: int = 1) -> float:
        """Calculate seconds until enough tokens are available."""
        self._refill()

        if self.tokens >= tokens:
            return 0.0

        needed = tokens - self.tokens
        return needed / self.refill_rate

    def get_stats(self) -> Dict[str, float]:
        self._refill()
        utilization = 1.0 - (self.tokens / self.capacity) if self.capacity > 0 else 0.0
        return {
            "tokens": self.tokens,
            "capacity": self.capacity,
            "refill_rate": self.refill_rate,
            "utilization": utilization,
        }


class RateLimiter:
    """Async jobs-per-second ceiling shared by every worker of one pool."""

    def __init__(
        self,
        rate_per_second: float,
        burst_capacity: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize rate limiter.

        Args:
            rate_per_second: Sustained rate limit (must be positive)
            burst_capacity: Maximum burst (defaults to one second worth of jobs,
                but never less than a single token)

        Raises:
            ValueError: If rate_per_second is not positive
        """
        if rate_per_second <= 0:
            raise ValueError(f"rate_per_second must be positive, got {rate_per_second}")

        self.rate_per_second = rate_per_second
        self.burst_capacity = burst_capacity or max(1.0, rate_per_second)
        self._bucket = TokenBucket(
            capacity=self.burst_capacity,
            tokens=self.burst_capacity,  # Start full
            refill_rate=rate_per_second,
            last_refill=clock(),
            clock=clock,
        )
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a token is available, then consume it."""

        async with self._lock:
            while not self._bucket.consume():
                wait = self._bucket.time_until_available()
                LOGGER.debug("Rate limit reached %s; waiting %.3fs", self.stats(), wait)
                await asyncio.sleep(wait)

    def try_acquire(self) -> bool:
        return self._bucket.consume()

    def stats(self) -> Dict[str, float]:
        return self._bucket.get_stats()
