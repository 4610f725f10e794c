"""
GST Invoice Admin - Outbound Rate Limiter

Bounds calls to the IRP to `rate_limit_requests` per rolling window
(60 seconds by default).

Two backends:
- SlidingWindowRateLimiter: in-process, FIFO through an asyncio.Lock
- RedisRateLimiter: sorted set in Redis, shared by every worker process
"""

import asyncio
import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

import redis.asyncio as redis

from app.config import settings
from app.utils.error_handling import RateLimitException

logger = logging.getLogger(__name__)


Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class RateLimiter(ABC):
    """Slot acquisition contract shared by both backends."""

    @abstractmethod
    async def acquire_slot(self, limit: int, max_wait: Optional[float] = None) -> None:
        """
        Wait until a call is allowed under `limit` calls per window.

        Raises:
            RateLimitException: if the wait would exceed max_wait seconds
        """

    async def close(self) -> None:
        return None


class SlidingWindowRateLimiter(RateLimiter):
    """
    In-memory sliding window.

    The lock is held while a caller sleeps for its slot, so waiters are
    served in arrival order.
    """

    def __init__(
        self,
        window_seconds: Optional[float] = None,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.window_seconds = float(window_seconds or settings.gst_rate_limit_window_seconds)
        self._clock = clock
        self._sleep = sleep
        self._calls: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._calls and self._calls[0] <= cutoff:
            self._calls.popleft()

    def in_window(self) -> int:
        """Calls counted in the current window."""
        self._evict(self._clock())
        return len(self._calls)

    async def acquire_slot(self, limit: int, max_wait: Optional[float] = None) -> None:
        if limit <= 0:
            raise ValueError("rate limit must be positive")

        async with self._lock:
            started = self._clock()
            now = started
            self._evict(now)

            while len(self._calls) >= limit:
                # The slot frees when the call `limit` places back expires
                frees_at = self._calls[len(self._calls) - limit] + self.window_seconds
                wait = max(frees_at - now, 0.0)
                if max_wait is not None and (now - started) + wait > max_wait:
                    retry_after = max(1, math.ceil(wait))
                    logger.warning(
                        f"GST rate limit reached ({limit}/{self.window_seconds:.0f}s), "
                        f"next slot in {wait:.1f}s exceeds max wait {max_wait}s"
                    )
                    raise RateLimitException(retry_after=retry_after)

                logger.info(f"GST rate limit reached, waiting {wait:.2f}s for a slot")
                await self._sleep(wait)
                now = self._clock()
                self._evict(now)

            self._calls.append(now)


class RedisRateLimiter(RateLimiter):
    """
    Sliding window over a Redis sorted set (member per call, score = time).

    A caller adds itself, then counts; if the window is over quota it
    removes its own member again and waits for the oldest entry to age out.
    Concurrent callers can only under-use the quota, never exceed it.
    """

    KEY = "gst:ratelimit:irp"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        window_seconds: Optional[float] = None,
        key: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        clock: Clock = time.time,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.redis_url = redis_url or settings.redis_url
        self.window_seconds = float(window_seconds or settings.gst_rate_limit_window_seconds)
        self.key = key or self.KEY
        self._client = client
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    async def get_client(self) -> redis.Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def acquire_slot(self, limit: int, max_wait: Optional[float] = None) -> None:
        if limit <= 0:
            raise ValueError("rate limit must be positive")

        client = await self.get_client()

        # Local FIFO first, then compete with other processes
        async with self._lock:
            started = self._clock()
            while True:
                now = self._clock()
                member = f"{now:.6f}:{uuid.uuid4().hex}"

                await client.zremrangebyscore(self.key, 0, now - self.window_seconds)
                await client.zadd(self.key, {member: now})
                count = await client.zcard(self.key)

                if count <= limit:
                    await client.expire(self.key, int(self.window_seconds) + 1)
                    return

                await client.zrem(self.key, member)
                oldest = await client.zrange(self.key, 0, 0, withscores=True)
                if oldest:
                    wait = max(oldest[0][1] + self.window_seconds - now, 0.05)
                else:
                    wait = 0.05

                if max_wait is not None and (now - started) + wait > max_wait:
                    logger.warning(f"Shared GST rate limit reached ({count - 1}/{limit}), giving up")
                    raise RateLimitException(retry_after=max(1, math.ceil(wait)))

                logger.info(f"Shared GST rate limit reached, waiting {wait:.2f}s for a slot")
                await self._sleep(wait)


def build_rate_limiter(backend: Optional[str] = None) -> RateLimiter:
    """Factory selecting the limiter backend from GST_RATE_LIMIT_BACKEND."""
    backend = (backend or settings.gst_rate_limit_backend).lower()
    if backend == "redis":
        return RedisRateLimiter()
    if backend == "memory":
        return SlidingWindowRateLimiter()
    raise ValueError(f"Unknown GST rate limit backend: {backend}")
