"""Redis-backed state store.

Shares session and capacity state across gateway processes. The two
counter primitives run as Lua scripts so the read and the write happen
in one indivisible server-side step:

- increment_below: GET, compare with cap, INCR only when below
- decrement_floor: GET, DECR only when above zero, otherwise pin to 0

Usage:
    store = RedisStateStore.from_url("redis://localhost:6379/0")
    if await store.increment_below("subterm:capacity", 10):
        ...
    await store.close()
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, List, Optional, Sequence, Set

from redis.exceptions import RedisError

from subterm.exceptions import StoreUnavailable

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from redis.asyncio import Redis


# KEYS[1] = counter, ARGV[1] = cap. Returns 1 when granted, 0 when full.
INCREMENT_BELOW_SCRIPT = """
local current = tonumber(redis.call("GET", KEYS[1]) or "0")
if current >= tonumber(ARGV[1]) then
    return 0
end
redis.call("INCR", KEYS[1])
return 1
"""

# KEYS[1] = counter. Returns the new value, never below zero.
DECREMENT_FLOOR_SCRIPT = """
local current = tonumber(redis.call("GET", KEYS[1]) or "0")
if current <= 0 then
    redis.call("SET", KEYS[1], 0)
    return 0
end
return redis.call("DECR", KEYS[1])
"""


class RedisStateStore:
    """
    StateStore implementation on top of redis.asyncio.

    All redis client errors (connection refused, timeouts, server
    errors) surface as StoreUnavailable.
    """

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 5.0) -> RedisStateStore:
        import redis.asyncio as aioredis

        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    @asynccontextmanager
    async def _errors(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except (RedisError, OSError) as e:
            logger.error("Redis %s failed: %s", operation, e)
            raise StoreUnavailable(
                f"State store unavailable during {operation}: {e}",
                details={"operation": operation},
            ) from e

    async def get(self, key: str) -> Optional[str]:
        async with self._errors("get"):
            return await self._redis.get(key)

    async def set(self, key: str, value: str, *, only_if_exists: bool = False) -> bool:
        async with self._errors("set"):
            result = await self._redis.set(key, value, xx=only_if_exists)
            return bool(result)

    async def delete(self, key: str) -> int:
        async with self._errors("delete"):
            return int(await self._redis.delete(key))

    async def sadd(self, key: str, member: str) -> int:
        async with self._errors("sadd"):
            return int(await self._redis.sadd(key, member))

    async def srem(self, key: str, member: str) -> int:
        async with self._errors("srem"):
            return int(await self._redis.srem(key, member))

    async def smembers(self, key: str) -> Set[str]:
        async with self._errors("smembers"):
            return set(await self._redis.smembers(key))

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        async with self._errors("mget"):
            return list(await self._redis.mget(list(keys)))

    async def increment_below(self, key: str, cap: int) -> bool:
        async with self._errors("increment_below"):
            result = await self._redis.eval(INCREMENT_BELOW_SCRIPT, 1, key, cap)
            return int(result) == 1

    async def decrement_floor(self, key: str) -> int:
        async with self._errors("decrement_floor"):
            return int(await self._redis.eval(DECREMENT_FLOOR_SCRIPT, 1, key))

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError) as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    async def close(self) -> None:
        async with self._errors("close"):
            await self._redis.aclose()
