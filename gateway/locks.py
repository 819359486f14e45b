"""
Admission control for agent runs.

- GroupLock:      at most one run per group key at a time, FIFO per key
- AgentSemaphore: at most N runs in flight across all groups

The coordinator always takes the group lock first and the semaphore second,
so a group queued behind its own previous run does not hold a global permit
while it waits.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

from agent.errors import CapacityExceeded

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GroupLock:
    """Keyed mutex; entries for keys nobody holds or waits on are dropped."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    async def run(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        async with self.hold(key):
            return await operation()

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

    def reset(self) -> None:
        """Forget all keys. Only safe when no run is in flight (tests)."""
        self._locks.clear()
        self._users.clear()


class AgentSemaphore:
    """Global cap on concurrently executing agent runs."""

    def __init__(self, capacity: int, max_waiting: Optional[int] = None):
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self._capacity = capacity
        self._max_waiting = max_waiting
        self._sem = asyncio.Semaphore(capacity)
        self._in_use = 0
        self._waiting = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def waiting(self) -> int:
        return self._waiting

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[None]:
        """Hold one permit for the duration of the block.

        Raises:
            CapacityExceeded: every permit is taken and ``max_waiting``
                callers are already queued.
        """
        if (
            self._max_waiting is not None
            and self._sem.locked()
            and self._waiting >= self._max_waiting
        ):
            raise CapacityExceeded(
                f"Agent queue is full ({self._in_use} running, {self._waiting} waiting)"
            )
        self._waiting += 1
        try:
            await self._sem.acquire()
        finally:
            self._waiting -= 1
        self._in_use += 1
        try:
            yield
        finally:
            self._in_use -= 1
            self._sem.release()

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        async with self.acquire():
            return await operation()

    def reset(self, capacity: Optional[int] = None) -> None:
        """Replace the underlying semaphore. Only safe when idle (tests)."""
        if capacity is not None:
            self._capacity = capacity
        self._sem = asyncio.Semaphore(self._capacity)
        self._in_use = 0
        self._waiting = 0
