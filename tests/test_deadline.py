import asyncio
import time

import pytest

from downpour.deadline import DeadlineController


def test_fires_when_budget_elapses():
    async def scenario():
        d = DeadlineController(budget_s=0.05, grace_period_s=0.1)
        started = time.perf_counter()
        d.start()
        await asyncio.wait_for(d.wait(), timeout=2.0)
        return d, time.perf_counter() - started

    d, elapsed = asyncio.run(scenario())
    assert d.is_set()
    assert d.expired
    assert d.reason == "deadline"
    assert 0.04 <= elapsed < 1.0


def test_request_stop_fires_early_and_once():
    async def scenario():
        d = DeadlineController(budget_s=10.0, grace_period_s=0.1)
        d.start()
        d.request_stop("operator")
        d.request_stop("again")
        await asyncio.wait_for(d.wait(), timeout=1.0)
        return d

    d = asyncio.run(scenario())
    assert not d.expired
    assert d.reason == "operator"


def test_stop_disarms_timer():
    async def scenario():
        d = DeadlineController(budget_s=0.05, grace_period_s=0.1)
        d.start()
        d.stop()
        await asyncio.sleep(0.15)
        return d

    assert not asyncio.run(scenario()).is_set()


def test_guard_returns_true_when_awaitable_finishes_first():
    async def scenario():
        d = DeadlineController(budget_s=10.0, grace_period_s=0.1)
        d.start()
        ok = await d.guard(asyncio.sleep(0.01))
        d.stop()
        return ok

    assert asyncio.run(scenario()) is True


def test_guard_abandons_wait_on_cancellation():
    async def scenario():
        d = DeadlineController(budget_s=0.05, grace_period_s=0.1)
        d.start()
        started = time.perf_counter()
        ok = await d.guard(asyncio.sleep(30))
        return ok, time.perf_counter() - started

    ok, elapsed = asyncio.run(scenario())
    assert ok is False
    assert elapsed < 1.0


def test_guard_after_firing_returns_immediately():
    async def scenario():
        d = DeadlineController(budget_s=10.0, grace_period_s=0.1)
        d.request_stop()
        return await d.guard(asyncio.sleep(30))

    assert asyncio.run(scenario()) is False


def test_budget_must_be_positive():
    with pytest.raises(ValueError):
        DeadlineController(budget_s=0, grace_period_s=1.0)
