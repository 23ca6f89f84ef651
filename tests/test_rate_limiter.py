import asyncio
import threading
from unittest.mock import patch

import pytest

from relay.services.rate_limiter import RateLimiter
from tests.fakes import FakeClock, FakeRedis


def _limiter(clock, redis=None, max_requests=5, window_seconds=60):
    return RateLimiter(redis, max_requests=max_requests, window_seconds=window_seconds, clock=clock, sleep=clock.sleep)


async def _acquire_all(limiter, clock, destination, count):
    granted_at = []
    for _ in range(count):
        await limiter.acquire(destination)
        granted_at.append(clock())
    return granted_at


@pytest.fixture(autouse=True)
def _no_alerts():
    with patch("relay.services.rate_limiter.alert_warning") as mock_alert:
        yield mock_alert


class TestRedisWindow:
    def test_eight_sends_with_limit_five(self):
        clock = FakeClock(start=0.0)
        limiter = _limiter(clock, FakeRedis(clock))

        granted_at = asyncio.run(_acquire_all(limiter, clock, "15550001111", 8))

        assert granted_at[:5] == [0.0] * 5
        assert all(at >= 60.0 for at in granted_at[5:])
        assert len(granted_at) == 8

    def test_never_more_than_limit_per_window(self):
        clock = FakeClock(start=0.0)
        limiter = _limiter(clock, FakeRedis(clock), max_requests=3, window_seconds=10)

        granted_at = asyncio.run(_acquire_all(limiter, clock, "15550001111", 10))

        windows = {}
        for at in granted_at:
            windows.setdefault(int(at // 10), 0)
            windows[int(at // 10)] += 1
        assert max(windows.values()) <= 3

    def test_destinations_are_independent(self):
        clock = FakeClock(start=0.0)
        limiter = _limiter(clock, FakeRedis(clock), max_requests=1)

        async def run():
            await limiter.acquire("111111111")
            await limiter.acquire("222222222")

        asyncio.run(run())
        assert clock() == 0.0

    def test_key_gets_window_ttl(self):
        clock = FakeClock(start=0.0)
        redis = FakeRedis(clock)
        limiter = _limiter(clock, redis)

        asyncio.run(limiter.acquire("15550001111"))

        assert redis.data["ratelimit:15550001111"] == 1
        assert redis.expiry["ratelimit:15550001111"] == 60.0

    def test_redis_failure_falls_back_to_local_window(self, _no_alerts):
        clock = FakeClock(start=0.0)
        redis = FakeRedis(clock)
        redis.fail = True
        limiter = _limiter(clock, redis, max_requests=2)

        granted_at = asyncio.run(_acquire_all(limiter, clock, "15550001111", 3))

        assert granted_at == [0.0, 0.0, 60.0]
        _no_alerts.assert_called_once()

    def test_fallback_alert_runs_off_the_event_loop(self, _no_alerts):
        threads = []
        _no_alerts.side_effect = lambda *args: threads.append(threading.current_thread())
        clock = FakeClock(start=0.0)
        redis = FakeRedis(clock)
        redis.fail = True

        allowed, _ = asyncio.run(_limiter(clock, redis).try_acquire("15550001111"))

        assert allowed is True
        assert len(threads) == 1
        assert threads[0] is not threading.main_thread()


class TestLocalWindow:
    def test_eight_sends_with_limit_five(self):
        clock = FakeClock(start=0.0)
        limiter = _limiter(clock)

        granted_at = asyncio.run(_acquire_all(limiter, clock, "15550001111", 8))

        assert granted_at == [0.0] * 5 + [60.0] * 3

    def test_try_acquire_reports_wait(self):
        clock = FakeClock(start=0.0)
        limiter = _limiter(clock, max_requests=1)

        async def run():
            first = await limiter.try_acquire("15550001111")
            clock.advance(15)
            second = await limiter.try_acquire("15550001111")
            return first, second

        first, second = asyncio.run(run())
        assert first == (True, 0.0)
        assert second == (False, 45.0)

    def test_concurrent_waiters_all_get_through(self):
        clock = FakeClock(start=0.0)
        limiter = _limiter(clock, max_requests=5)

        async def run():
            return await asyncio.gather(*(limiter.acquire("15550001111") for _ in range(8)))

        waits = asyncio.run(run())
        assert len(waits) == 8
        assert limiter._local["15550001111"]["count"] <= 5
