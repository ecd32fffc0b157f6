from __future__ import annotations

import hashlib
import uuid
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCounterStore:
    """Redis-backed sliding-window log shared by every worker process."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Sliding-window log: one sorted-set member per admitted request, scored by
    # its timestamp in milliseconds. Trimming, counting and inserting happen in
    # a single script so concurrent callers cannot both take the last slot.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  local retry_after = window
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  if oldest[2] then
    retry_after = tonumber(oldest[2]) + window - now
  end
  return {0, count, retry_after}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, window)
return {1, count + 1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before routing admission checks to it."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"admission:{digest}"

    async def hit(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> Tuple[bool, int, float]:
        """Record one request; returns (allowed, count_in_window, retry_after_seconds)."""
        now_ms = int(now * 1000)
        window_ms = int(window_seconds * 1000)
        member = f"{now_ms}-{uuid.uuid4().hex}"
        allowed, count, retry_ms = await self._sliding_window(
            keys=[self._normalize_key(key)],
            args=[now_ms, window_ms, limit, member],
        )
        return bool(int(allowed)), int(count), max(0.0, float(retry_ms) / 1000.0)

    async def reset(self, key: str) -> None:
        await self.client.delete(self._normalize_key(key))

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()
