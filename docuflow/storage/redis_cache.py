from __future__ import annotations

import hashlib
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RATE_PREFIX = "docuflow:rate:"


class RedisCache:
    """Rate-limit counters shared across app workers.

    Sessions live only in the store; Redis never holds authentication state.
    """

    # fixed window: the first hit in a window sets its expiry
    _WINDOW_SCRIPT = """
local hits = redis.call('INCRBY', KEYS[1], ARGV[2])
if hits == tonumber(ARGV[2]) then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {hits, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window = self.client.register_script(self._WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        # sync ping keeps the async pool free of any startup event loop
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
    ) -> Union[bool, Tuple[bool, int, int]]:
        # subjects are emails; only a digest of them is stored
        bucket = RATE_PREFIX + hashlib.sha256(key.encode()).hexdigest()
        hits, ttl = await self._window(
            keys=[bucket], args=[int(window_seconds), max(1, cost)]
        )
        hits, ttl = int(hits), int(ttl)
        allowed = hits <= limit
        if not return_remaining:
            return allowed
        return allowed, max(0, limit - hits), 0 if allowed else ttl

    async def close(self) -> None:
        await self.client.aclose()
