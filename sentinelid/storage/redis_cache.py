from __future__ import annotations

import hashlib
import time
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# KEYS[1] bucket; ARGV now, refill per second, capacity, cost.
# Returns {allowed, tokens left, seconds until cost is affordable}.
_BUCKET_LUA = """
local bucket = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local tokens = tonumber(bucket[1]) or capacity
local last = tonumber(bucket[2]) or now

tokens = math.min(capacity, tokens + math.max(0, now - last) * rate)
local allowed = 0
local wait = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  wait = math.ceil((cost - tokens) / rate)
end

redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', KEYS[1], math.max(math.ceil(capacity / rate), wait, 1))
return {allowed, tostring(tokens), wait}
"""

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def bucket_key(key: str) -> str:
    """``login:10.0.0.1`` -> ``rl:login:<sha256>``; subjects (IPs, emails) never reach Redis."""
    scope, _, subject = key.partition(":")
    digest = hashlib.sha256(subject.encode()).hexdigest()
    return f"rl:{scope}:{digest}"


def _bucket_args(limit: int, window_seconds: int, cost: int) -> list:
    return [time.time(), float(limit) / float(window_seconds), limit, max(1, cost)]


def _unpack(raw, return_remaining: bool) -> RateLimitResult:
    allowed, tokens, wait = raw
    allowed = bool(int(allowed))
    if not return_remaining:
        return allowed
    return allowed, max(0, int(float(tokens))), int(wait or 0)


class RedisCache:
    """Shared throttle buckets for every portal instance."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(_BUCKET_LUA)

    def verify_connection(self) -> None:
        # A throwaway sync client keeps the async pool off the startup event loop
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        """Take ``cost`` tokens from a bucket of ``limit`` refilled over ``window_seconds``."""
        raw = await self._bucket(
            keys=[bucket_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _unpack(raw, return_remaining)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Blocking client behind the same awaitable interface.

    Used under TEST_MODE, where each test drives its own event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(_BUCKET_LUA)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = self._bucket(keys=[bucket_key(key)], args=_bucket_args(limit, window_seconds, cost))
        return _unpack(raw, return_remaining)

    async def close(self) -> None:
        self.client.close()
