from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from redis.exceptions import RedisError

from authgate.logging import get_logger
from authgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# Expired local buckets are dropped once this many keys are tracked.
_PRUNE_THRESHOLD = 10_000


@dataclass(frozen=True)
class Admission:
    admitted: bool
    remaining: int
    retry_after: int = 0

    def __bool__(self) -> bool:
        return self.admitted


@dataclass
class _Bucket:
    window_start: float
    count: int = 0


class RateLimiter:
    """Fixed-window attempt counter.

    At most ``limit`` attempts per key are admitted in any window of
    ``window_seconds``. Rejected attempts are not counted. With a Redis cache
    the count is shared across workers; a Redis failure degrades to the local
    buckets for that call.
    """

    def __init__(
        self,
        *,
        limit: int = 5,
        window_seconds: int = 60,
        cache: Optional[RedisCache] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self.cache = cache
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = asyncio.Lock()

    async def attempt(self, key: str) -> Admission:
        if self.cache is not None:
            try:
                admitted, remaining, retry_after = await self.cache.check_rate_limit(
                    key, self.limit, self.window_seconds
                )
                admission = Admission(admitted, remaining, retry_after)
                self._log_reject(key, admission)
                return admission
            except RedisError as exc:
                logger.warning("rate_limit_cache_unavailable", error=str(exc))
        admission = await self._attempt_local(key)
        self._log_reject(key, admission)
        return admission

    async def _attempt_local(self, key: str) -> Admission:
        async with self._lock:
            now = self._clock()
            if len(self._buckets) >= _PRUNE_THRESHOLD:
                self._prune(now)
            bucket = self._buckets.get(key)
            if bucket is None or now - bucket.window_start >= self.window_seconds:
                bucket = _Bucket(window_start=now)
                self._buckets[key] = bucket
            if bucket.count >= self.limit:
                retry_after = math.ceil(bucket.window_start + self.window_seconds - now)
                return Admission(False, 0, max(1, retry_after))
            bucket.count += 1
            return Admission(True, self.limit - bucket.count)

    def _prune(self, now: float) -> None:
        stale = [
            key
            for key, bucket in self._buckets.items()
            if now - bucket.window_start >= self.window_seconds
        ]
        for key in stale:
            del self._buckets[key]

    def _log_reject(self, key: str, admission: Admission) -> None:
        if not admission.admitted:
            # keys embed emails; only the prefix is logged
            logger.warning(
                "rate_limit_rejected",
                scope=key.split(":", 1)[0],
                retry_after=admission.retry_after,
            )

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._buckets.pop(key, None)
        if self.cache is not None:
            await self.cache.reset_rate_limit(key)
