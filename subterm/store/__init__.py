"""
Shared state store backends.

Provides:
- StateStore: Protocol consumed by the admission controller and registry
- InMemoryStateStore: Single-process backend (default)
- RedisStateStore: Redis backend with Lua-scripted counter primitives
"""
from subterm.store.base import StateStore
from subterm.store.memory import InMemoryStateStore
from subterm.store.redis import RedisStateStore

__all__ = ["StateStore", "InMemoryStateStore", "RedisStateStore"]
