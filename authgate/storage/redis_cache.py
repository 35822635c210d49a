from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for login throttling and the session denylist."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed-window counter: reject without incrementing once the window is
    # full, otherwise INCR and start the window TTL on the first hit.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')
if current >= limit then
  local ttl = redis.call('PTTL', key)
  if ttl < 0 then
    redis.call('PEXPIRE', key, window_ms)
    ttl = window_ms
  end
  return {0, current, ttl}
end

current = redis.call('INCR', key)
if current == 1 then
  redis.call('PEXPIRE', key, window_ms)
end
return {1, current, redis.call('PTTL', key)}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so emails and IPs never collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Count one attempt in a fixed window.

        Returns ``(admitted, remaining, retry_after_seconds)``.
        """
        admitted, count, ttl_ms = await self._fixed_window(
            keys=[self._normalize_rate_key(key)],
            args=[limit, window_seconds * 1000],
        )
        remaining = max(0, limit - int(count))
        retry_after = max(1, -(-int(ttl_ms) // 1000)) if not int(admitted) else 0
        return bool(int(admitted)), remaining, retry_after

    async def reset_rate_limit(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def denylist_session(self, session_id: str, ttl_seconds: int) -> None:
        """Mark a session revoked for as long as its access cookie can live."""
        if ttl_seconds > 0:
            await self.client.set(f"auth:session:denylist:{session_id}", "1", ex=ttl_seconds)

    async def is_session_denylisted(self, session_id: str) -> bool:
        return bool(await self.client.exists(f"auth:session:denylist:{session_id}"))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache"]
