# api/rate_limit.py
# ============================================================================
# TISCO MARKET BACKEND v1.0 — RATE LIMITING
# ============================================================================
# Fixed-window counters. Redis when reachable, process memory otherwise
# (counters then only hold per worker).
# ============================================================================

import asyncio
import math
import os
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import redis.asyncio as redis
import structlog

from errors import RateLimitedError

logger = structlog.get_logger().bind(component="rate_limit")


class RateLimitConfig:
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
    STATUS_LIMIT = int(os.getenv("STATUS_RATE_LIMIT", "60"))
    STATUS_WINDOW_SECONDS = int(os.getenv("STATUS_RATE_WINDOW", "60"))


config = RateLimitConfig()


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int

    @property
    def retry_after(self) -> int:
        return max(self.reset_at - int(time.time()), 1)

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """Fixed-window limiter keyed by caller"""

    def __init__(
        self,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
        redis_url: Optional[str] = None,
        prefix: str = "ratelimit",
    ):
        self.limit = limit or config.STATUS_LIMIT
        self.window_seconds = window_seconds or config.STATUS_WINDOW_SECONDS
        self.redis_url = redis_url
        self.prefix = prefix
        self._redis = None
        self._windows: Dict[str, Tuple[int, int]] = {}
        self._lock = asyncio.Lock()

    @property
    def backend(self) -> str:
        return "redis" if self._redis else "memory"

    async def initialize(self):
        """Connect to Redis; stay in memory when it is not reachable"""
        if not self.redis_url:
            return
        try:
            self._redis = redis.from_url(self.redis_url)
            await self._redis.ping()
            logger.info("rate_limit_redis_connected")
        except Exception as e:
            logger.warning("redis_unavailable", error=str(e), fallback="in_memory")
            self._redis = None

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None
        self._windows.clear()

    def _window(self, now: float) -> Tuple[int, int]:
        start = int(now // self.window_seconds) * self.window_seconds
        return start, start + self.window_seconds

    async def _incr_redis(self, key: str, window_start: int) -> int:
        redis_key = f"{self.prefix}:{key}:{window_start}"
        count = await self._redis.incr(redis_key)
        if count == 1:
            await self._redis.expire(redis_key, self.window_seconds)
        return int(count)

    async def _incr_memory(self, key: str, window_start: int) -> int:
        async with self._lock:
            start, count = self._windows.get(key, (window_start, 0))
            if start != window_start:
                count = 0
            count += 1
            self._windows[key] = (window_start, count)
            return count

    async def hit(self, key: str, now: Optional[float] = None) -> RateLimitDecision:
        current = time.time() if now is None else now
        window_start, reset_at = self._window(current)

        count = None
        if self._redis:
            try:
                count = await self._incr_redis(key, window_start)
            except Exception as e:
                logger.warning("rate_limit_redis_error", error=str(e), fallback="in_memory")
        if count is None:
            count = await self._incr_memory(key, window_start)

        return RateLimitDecision(
            allowed=count <= self.limit,
            limit=self.limit,
            remaining=max(self.limit - count, 0),
            reset_at=int(math.ceil(reset_at)),
        )

    async def check(self, key: str) -> RateLimitDecision:
        """Count a request; raise RateLimitedError once the window is exhausted"""
        decision = await self.hit(key)
        if not decision.allowed:
            logger.warning("rate_limited", key=key, limit=decision.limit)
            raise RateLimitedError(
                "Too many requests",
                retry_after=decision.retry_after,
                limit=decision.limit,
                reset_at=decision.reset_at,
            )
        return decision
