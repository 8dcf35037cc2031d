from __future__ import annotations

import uuid
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper used to lease the periodic session cleanup job.

    Session state never lives here; Redis only decides which instance runs
    the sweep when several share one database.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Delete only if the caller still holds the lease
    _RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release = self.client.register_script(self._RELEASE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cleanup lease."""

        # Short-lived sync client so the async one is not bound to a startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _lock_key(name: str) -> str:
        return f"lock:{name}"

    async def acquire_lock(self, name: str, ttl_seconds: int) -> Optional[str]:
        """Take the named lease; returns a token on success, ``None`` if held elsewhere."""

        token = uuid.uuid4().hex
        acquired = await self.client.set(
            self._lock_key(name), token, nx=True, ex=max(1, int(ttl_seconds))
        )
        return token if acquired else None

    async def release_lock(self, name: str, token: str) -> bool:
        released = await self._release(keys=[self._lock_key(name)], args=[token])
        return bool(released)

    async def close(self) -> None:
        await self.client.aclose()
