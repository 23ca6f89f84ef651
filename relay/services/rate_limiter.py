"""Per-destination fixed-window rate limiting for outbound sends.

Counters live in Redis (``ratelimit:{destination}``) so every worker and
instance shares them. When Redis is unreachable an in-process window takes
over, which is only exact for a single instance.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from relay.logging_config import get_logger
from relay.services.alert_service import alert_warning

logger = get_logger("rate_limiter")

KEY_PREFIX = "ratelimit:"
MIN_WAIT_SECONDS = 0.05


class RateLimiter:
    def __init__(
        self,
        redis_client=None,
        *,
        max_requests: int = 100,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.redis = redis_client
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._local: dict[str, dict[str, float]] = {}
        self._fallback_warned = False

    async def acquire(self, destination: str) -> float:
        """Wait until a send to ``destination`` fits in the current window.

        Only the calling coroutine is suspended; other destinations keep
        flowing. Returns the total seconds spent waiting.
        """
        waited = 0.0
        while True:
            allowed, retry_after = await self.try_acquire(destination)
            if allowed:
                if waited:
                    logger.info(
                        "Rate limit cleared",
                        extra={"context": {"destination": destination, "waited_seconds": round(waited, 3)}},
                    )
                return waited
            delay = max(retry_after, MIN_WAIT_SECONDS)
            waited += delay
            await self._sleep(delay)

    async def try_acquire(self, destination: str) -> tuple[bool, float]:
        """Count one attempt; returns (allowed, seconds until the window resets)."""
        if self.redis is None:
            return self._try_acquire_local(destination)

        key = f"{KEY_PREFIX}{destination}"
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.incr(key)
            pipe.pttl(key)
            count, ttl_ms = await pipe.execute()
            if ttl_ms is None or ttl_ms < 0:
                await self.redis.expire(key, self.window_seconds)
                ttl_ms = self.window_seconds * 1000
        except Exception as exc:
            logger.warning(
                "Rate limit redis update failed",
                extra={"context": {"destination": destination, "error": str(exc)}},
            )
            if not self._fallback_warned:
                self._fallback_warned = True
                await asyncio.to_thread(
                    alert_warning, "Rate limiter running in-process (redis unavailable)", {"destination": destination}
                )
            return self._try_acquire_local(destination)

        if int(count) > self.max_requests:
            return False, ttl_ms / 1000
        return True, 0.0

    def _try_acquire_local(self, destination: str) -> tuple[bool, float]:
        now = self._clock()
        window = self._local.get(destination)
        if not window or window["reset_at"] <= now:
            window = {"count": 0, "reset_at": now + self.window_seconds}
            self._local[destination] = window

        if window["count"] >= self.max_requests:
            return False, window["reset_at"] - now
        window["count"] += 1
        return True, 0.0
