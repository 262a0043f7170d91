from __future__ import annotations

import asyncio
import logging

import pytest

from enricher.rate_limit import RateLimiter, TokenBucket


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_token_bucket_refills_at_configured_rate() -> None:
    clock = FakeClock()
    bucket = TokenBucket(capacity=2, tokens=2, refill_rate=4, last_refill=clock(), clock=clock)

    assert bucket.consume()
    assert bucket.consume()
    assert not bucket.consume()
    assert bucket.time_until_available() == pytest.approx(0.25)

    clock.advance(0.25)
    assert bucket.consume()


def test_token_bucket_never_exceeds_capacity() -> None:
    clock = FakeClock()
    bucket = TokenBucket(capacity=3, tokens=0, refill_rate=10, last_refill=clock(), clock=clock)

    clock.advance(60)
    assert bucket.get_stats()["tokens"] == 3


def test_rate_limiter_burst_defaults_to_one_second_of_jobs() -> None:
    clock = FakeClock()
    limiter = RateLimiter(5, clock=clock)

    assert [limiter.try_acquire() for _ in range(6)] == [True] * 5 + [False]
    clock.advance(0.2)
    assert limiter.try_acquire()


def test_rate_limiter_sub_one_rate_still_allows_a_job() -> None:
    limiter = RateLimiter(0.5, clock=FakeClock())

    assert limiter.burst_capacity == 1.0
    assert limiter.try_acquire()


@pytest.mark.parametrize("rate", [0, -1])
def test_rate_limiter_rejects_non_positive_rate(rate: float) -> None:
    with pytest.raises(ValueError):
        RateLimiter(rate)


@pytest.mark.asyncio
async def test_rate_limiter_acquire_waits_for_refill(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="enricher.rate_limit")
    limiter = RateLimiter(50, burst_capacity=1)
    loop = asyncio.get_running_loop()

    await limiter.acquire()
    started = loop.time()
    await limiter.acquire()

    assert loop.time() - started >= 0.015
    assert "Rate limit reached" in caplog.text
    assert "'capacity': 1" in caplog.text
