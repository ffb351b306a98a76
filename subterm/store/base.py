from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, Set


class StateStore(Protocol):
    """Shared key-value store used for session and capacity state.

    Every method is a suspension point and raises StoreUnavailable when
    the backend cannot be reached. Implementations: InMemoryStateStore
    (single process) and RedisStateStore.
    """

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, *, only_if_exists: bool = False) -> bool:
        """Write a value. With only_if_exists, missing keys are left alone."""
        ...

    async def delete(self, key: str) -> int:
        ...

    async def sadd(self, key: str, member: str) -> int:
        ...

    async def srem(self, key: str, member: str) -> int:
        """Remove a set member. Returns 1 only for the caller that removed it."""
        ...

    async def smembers(self, key: str) -> Set[str]:
        ...

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        """Fetch many keys in one round-trip; missing keys come back as None."""
        ...

    async def increment_below(self, key: str, cap: int) -> bool:
        """Atomically increment the counter at key if it is below cap."""
        ...

    async def decrement_floor(self, key: str) -> int:
        """Atomically decrement the counter at key, never going below zero."""
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...
