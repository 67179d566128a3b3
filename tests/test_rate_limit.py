"""
Tests for the sliding-window rate limiter and adaptive tightening.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from concierge.admission import LimitRule, RateLimiter, TighteningPolicy, webhook_limit
from concierge.storage.redis_kv import SLIDING_WINDOW_ADD_SCRIPT, RedisKeyValueStore


@pytest.fixture
def limiter(kv, settings, logger):
    return RateLimiter(
        kv,
        settings,
        logger=logger,
        policy=TighteningPolicy(violation_threshold=2, global_multiplier=0.5, factor_multiplier=0.8, duration_seconds=300),
    )


@pytest.mark.asyncio
async def test_allows_up_to_limit_then_denies(limiter):
    rule = LimitRule(name="t", limit=3, window_seconds=60)

    decisions = [await limiter.check("ip:1", rule, now=1000.0 + offset) for offset in range(3)]
    denied = await limiter.check("ip:1", rule, now=1003.0)

    assert [decision.allowed for decision in decisions] == [True, True, True]
    assert [decision.remaining for decision in decisions] == [2, 1, 0]
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.retry_after_seconds == 57.0


@pytest.mark.asyncio
async def test_window_slides_and_factor_tightening_applies(limiter):
    rule = LimitRule(name="t", limit=3, window_seconds=60)
    for offset in range(3):
        await limiter.check("ip:1", rule, now=1000.0 + offset)
    await limiter.check("ip:1", rule, now=1003.0)

    later = await limiter.check("ip:1", rule, now=1061.0)

    assert later.allowed is True
    assert later.multiplier == pytest.approx(0.8)
    assert later.window.limit == 2


@pytest.mark.asyncio
async def test_factors_are_independent(limiter):
    rule = LimitRule(name="t", limit=1, window_seconds=60)

    first = await limiter.check("ip:1", rule, now=1000.0)
    other = await limiter.check("ip:2", rule, now=1000.0)

    assert first.allowed and other.allowed


@pytest.mark.asyncio
async def test_global_and_factor_tightening_compose(limiter):
    rule = LimitRule(name="burst", limit=10, window_seconds=60)
    for factor in ("ip:x", "ip:y"):
        for index in range(10):
            assert (await limiter.check(factor, rule, now=960.0 + index * 0.01)).allowed
        assert not (await limiter.check(factor, rule, now=961.0)).allowed

    tightened = await limiter.check("ip:x", rule, now=1030.0)
    fresh = await limiter.check("ip:z", rule, now=1030.0)

    assert tightened.multiplier == pytest.approx(0.4)
    assert tightened.window.limit == 4
    assert fresh.multiplier == pytest.approx(0.5)
    assert fresh.window.limit == 5
    records = await limiter.active_tightening("ip:x", rule, now=1030.0)
    assert {record.factor_key for record in records} == {"global", "ip:x"}


@pytest.mark.asyncio
async def test_limit_never_drops_below_one(limiter):
    rule = LimitRule(name="tiny", limit=1, window_seconds=60)
    await limiter.check("ip:1", rule, now=1000.0)
    await limiter.check("ip:1", rule, now=1000.5)

    decision = await limiter.check("ip:1", rule, now=1100.0)

    assert decision.allowed is True
    assert decision.window.limit == 1


@pytest.mark.asyncio
async def test_store_outage_degrades_to_allow(limiter, kv):
    kv.unavailable = True

    decision = await limiter.check("ip:1", webhook_limit(1))

    assert decision.allowed is True
    assert decision.degraded is True


def test_webhook_limit_floor():
    assert webhook_limit(0).limit == 1
    assert webhook_limit(120) == LimitRule(name="webhook_ip", limit=120, window_seconds=60)


@pytest.mark.asyncio
async def test_concurrent_checks_never_overshoot(limiter, kv):
    rule = LimitRule(name="t", limit=3, window_seconds=60)

    decisions = await asyncio.gather(*(limiter.check("ip:1", rule, now=1000.0) for _ in range(8)))

    assert sum(decision.allowed for decision in decisions) == 3
    assert kv.sliding_window_calls == 8
    assert await kv.zcard(limiter._window_key("ip:1", rule)) == 3


@pytest.mark.asyncio
async def test_redis_store_runs_window_as_one_script():
    client = MagicMock()
    client.eval = AsyncMock(return_value=[0, 3])
    store = RedisKeyValueStore(client)

    added, count = await store.sliding_window_add(
        "rl:t:ip:1",
        member="1000.000000:abcd1234",
        score=1000.0,
        window_start=940.0,
        limit=3,
        ttl_seconds=60,
    )

    assert (added, count) == (False, 3)
    args = client.eval.await_args.args
    assert args[0] == SLIDING_WINDOW_ADD_SCRIPT
    assert args[1:] == (1, "rl:t:ip:1", "940.000000", "3", "1000.000000", "1000.000000:abcd1234", "60")
