from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from portier_broker.logging import get_logger
from portier_broker.storage.base import validate_ttl
from portier_broker.storage.errors import StoreError

logger = get_logger(__name__)


class RedisStore:
    """Redis-backed store shared by every broker process."""

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and EXPIRE in one step; the expiry is only set when the key is new
    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    # Used when the server predates GETDEL (Redis < 6.2)
    _TAKE_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ) -> None:
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def put(self, key: str, value: str, ttl: Optional[int]) -> None:
        ttl = validate_ttl(ttl)
        try:
            if ttl is None:
                await self.client.set(key, value)
            else:
                await self.client.set(key, value, ex=ttl)
        except (RedisError, OSError) as exc:
            logger.error("store_put_failed", backend="redis", error=str(exc))
            raise StoreError("redis put failed") from exc

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except (RedisError, OSError) as exc:
            logger.error("store_get_failed", backend="redis", error=str(exc))
            raise StoreError("redis get failed") from exc

    async def take(self, key: str) -> Optional[str]:
        """Atomically get and delete ``key`` with GETDEL, or a Lua fallback."""
        try:
            try:
                return await self.client.getdel(key)
            except ResponseError as exc:
                if "unknown command" not in str(exc).lower():
                    raise
                return await self.client.eval(self._TAKE_SCRIPT, 1, key)
        except (RedisError, OSError) as exc:
            logger.error("store_take_failed", backend="redis", error=str(exc))
            raise StoreError("redis take failed") from exc

    async def increment_with_expiry(self, key: str, ttl: int) -> int:
        ttl = validate_ttl(ttl)
        try:
            count = await self.client.eval(self._INCREMENT_SCRIPT, 1, key, ttl)
        except (RedisError, OSError) as exc:
            logger.error("store_increment_failed", backend="redis", error=str(exc))
            raise StoreError("redis increment failed") from exc
        return int(count)

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except (RedisError, OSError) as exc:
            logger.error("store_delete_failed", backend="redis", error=str(exc))
            raise StoreError("redis delete failed") from exc

    async def ping(self) -> None:
        try:
            await self.client.ping()
        except (RedisError, OSError) as exc:
            raise StoreError("redis unavailable") from exc

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
