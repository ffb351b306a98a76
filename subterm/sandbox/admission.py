"""
Admission control for sandbox capacity.

A single process-wide counter caps how many sandboxes exist at once.
Only reserve_slot() and release_slot() touch it, and both are one
atomic store operation each:

    admission = AdmissionController(store, max_sandboxes=10)
    if not await admission.reserve_slot():
        raise CapacityExceeded(...)
    ...
    await admission.release_slot()
"""
from __future__ import annotations

import logging

from subterm.store.base import StateStore

logger = logging.getLogger(__name__)


class AdmissionController:
    """
    Grants and releases capacity slots against a global cap.

    release_slot() clamps at zero, so a release that was never matched
    by a reserve (e.g. a retried delete) cannot push the counter
    negative and free phantom capacity.
    """

    def __init__(
        self,
        store: StateStore,
        max_sandboxes: int,
        counter_key: str = "subterm:capacity",
    ) -> None:
        if max_sandboxes < 1:
            raise ValueError("max_sandboxes must be >= 1")
        self._store = store
        self._max = max_sandboxes
        self._key = counter_key

    @property
    def max_sandboxes(self) -> int:
        return self._max

    async def reserve_slot(self) -> bool:
        """Take one slot if the counter is below the cap."""
        granted = await self._store.increment_below(self._key, self._max)
        if not granted:
            logger.info("Capacity slot denied (max=%d)", self._max)
        return granted

    async def release_slot(self) -> None:
        """Give one slot back. Never drops the counter below zero."""
        remaining = await self._store.decrement_floor(self._key)
        logger.debug("Capacity slot released (in use=%d)", remaining)
