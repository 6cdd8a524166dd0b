"""Fixed-window rate limiter shared across processes through Redis."""

import math
import time
from typing import Callable

import logging
import redis.asyncio as redis

from .config import RateLimit

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Allow at most ``limit.max`` job starts per ``limit.duration_ms`` window.

    The counter for the current window lives in Redis, so every worker
    process consuming the same queue shares one budget.
    """

    def __init__(
        self,
        client: redis.Redis,
        key: str,
        limit: RateLimit,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = client
        self.key = key
        self.limit = limit
        self._clock = clock

    async def acquire(self) -> float:
        """
        Take one slot in the current window.

        Returns:
            0 if a slot was taken, otherwise seconds until the next window opens
        """
        now_ms = self._clock() * 1000
        window = int(now_ms // self.limit.duration_ms)
        window_key = f"{self.key}:{window}"

        count = await self._redis.incr(window_key)
        if count == 1:
            await self._redis.expire(window_key, math.ceil(self.limit.duration_ms / 1000) + 1)

        if count <= self.limit.max:
            return 0.0

        wait_ms = (window + 1) * self.limit.duration_ms - now_ms
        logger.debug(f"Rate limit {self.limit.max}/{self.limit.duration_ms}ms reached for {self.key}")
        return max(wait_ms / 1000, 0.0)
