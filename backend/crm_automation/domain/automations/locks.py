from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class LeadLockRegistry:
    """In-process mutual exclusion keyed by lead id.

    Locks are created on first use and dropped once no task holds or waits
    for them. Across processes the unique firing key is what prevents a
    time-driven rule from firing twice.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, lead_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(lead_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[lead_id] = lock
        self._users[lead_id] = self._users.get(lead_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users[lead_id] - 1
            if remaining:
                self._users[lead_id] = remaining
            else:
                del self._users[lead_id]
                del self._locks[lead_id]

    def is_locked(self, lead_id: str) -> bool:
        lock = self._locks.get(lead_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


lead_locks = LeadLockRegistry()
