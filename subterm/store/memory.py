"""
In-memory state store.

Single-process implementation of the StateStore protocol. Suitable for
development and tests, or a gateway running with one worker; use the
Redis store when several processes share the capacity cap.
"""
from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Sequence, Set


class InMemoryStateStore:
    """
    In-memory key-value store.

    Safe for use with asyncio: every operation runs under one lock, so
    the counter primitives are indivisible with respect to other
    coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._values: Dict[str, str] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._values.get(key)

    async def set(self, key: str, value: str, *, only_if_exists: bool = False) -> bool:
        async with self._lock:
            if only_if_exists and key not in self._values:
                return False
            self._values[key] = value
            return True

    async def delete(self, key: str) -> int:
        async with self._lock:
            if key in self._values:
                del self._values[key]
                return 1
            if key in self._sets:
                del self._sets[key]
                return 1
            return 0

    async def sadd(self, key: str, member: str) -> int:
        async with self._lock:
            members = self._sets.setdefault(key, set())
            if member in members:
                return 0
            members.add(member)
            return 1

    async def srem(self, key: str, member: str) -> int:
        async with self._lock:
            members = self._sets.get(key)
            if not members or member not in members:
                return 0
            members.discard(member)
            if not members:
                del self._sets[key]
            return 1

    async def smembers(self, key: str) -> Set[str]:
        async with self._lock:
            return set(self._sets.get(key, set()))

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        async with self._lock:
            return [self._values.get(k) for k in keys]

    async def increment_below(self, key: str, cap: int) -> bool:
        async with self._lock:
            current = int(self._values.get(key, "0"))
            if current >= cap:
                return False
            self._values[key] = str(current + 1)
            return True

    async def decrement_floor(self, key: str) -> int:
        async with self._lock:
            current = int(self._values.get(key, "0"))
            new_value = max(current - 1, 0)
            self._values[key] = str(new_value)
            return new_value

    async def ping(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        self._closed = True
