from __future__ import annotations

import hashlib
import time
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RATE_KEY_PREFIX = "ehr:rate:"

# KEYS[1] bucket hash; ARGV: now, refill per second, capacity, cost.
# Returns {allowed, tokens left, seconds until cost is available}.
_CONSUME_TOKENS = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', bucket, 'tokens', 'ts')
local level = tonumber(state[1]) or capacity
local since = tonumber(state[2]) or now

level = math.min(capacity, level + math.max(0, now - since) * rate)

local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / rate)
end

redis.call('HSET', bucket, 'tokens', level, 'ts', now)
redis.call('EXPIRE', bucket, math.max(math.ceil(capacity / rate), wait, 1))
return {allowed, tostring(level), wait}
"""


class RedisCache:
    """Shared token buckets for login, OTP and WebAuthn request limits.

    Without Redis each API worker keeps its own buckets (see
    ``runtime.check_rate_limit``), so limits are only global when this cache
    is configured.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(_CONSUME_TOKENS)

    def verify_connection(self) -> None:
        # Sync client: the async pool must not bind to the startup event loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def bucket_key(key: str) -> str:
        """Rate keys embed user-supplied logins; hash them into a fixed keyspace."""
        return RATE_KEY_PREFIX + hashlib.sha256(key.encode("utf-8")).hexdigest()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        allowed, level, wait = await self._consume(
            keys=[self.bucket_key(key)],
            args=[time.time(), float(limit) / float(window_seconds), limit, max(1, cost)],
        )
        ok = int(allowed) == 1
        if not return_remaining:
            return ok
        return ok, max(0, int(float(level))), int(wait or 0)

    async def close(self) -> None:
        await self.client.aclose()
