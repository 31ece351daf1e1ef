import asyncio
import time

import pytest

from downpour.throttling import TokenBucket


def test_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        TokenBucket(0)


def test_tokens_are_spaced_by_rate():
    async def scenario():
        bucket = TokenBucket(20.0)
        await bucket.start()
        started = time.perf_counter()
        try:
            for _ in range(4):
                await bucket.acquire()
        finally:
            await bucket.stop()
        return time.perf_counter() - started

    # first token is immediate, the next three wait one interval each
    assert asyncio.run(scenario()) >= 0.14


def test_ramp_up_starts_at_a_fraction_of_the_rate():
    async def scenario():
        bucket = TokenBucket(100.0, ramp_up_s=10.0)
        before = bucket.current_rate()
        await bucket.start()
        try:
            return before, bucket.current_rate()
        finally:
            await bucket.stop()

    before, ramping = asyncio.run(scenario())
    assert before == 100.0
    assert 20.0 <= ramping < 25.0


def test_stop_is_idempotent():
    async def scenario():
        bucket = TokenBucket(5.0)
        await bucket.start()
        await bucket.stop()
        await bucket.stop()

    asyncio.run(scenario())
