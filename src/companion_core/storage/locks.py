"""Per-key async mutual exclusion for a single process."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

log = logging.getLogger(__name__)


class LockManager:
    """Table of per-key ``asyncio.Lock`` objects.

    Waiters for one key are woken in FIFO order. Distinct keys never
    block each other. A key's lock is discarded once it is released and
    nobody is waiting on it.

    Usage:
        locks = LockManager()
        async with locks.hold("user-1"):
            ...
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}
        self._owners: dict[str, asyncio.Task] = {}

    async def acquire(self, key: str) -> None:
        """Suspend until *key* is free, then hold it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._unref(key)
            raise
        self._owners[key] = asyncio.current_task()

    def release(self, key: str) -> None:
        """Release *key*. Releasing a key nobody holds does nothing."""
        lock = self._locks.get(key)
        if lock is None or not lock.locked():
            return
        self._owners.pop(key, None)
        lock.release()
        self._unref(key)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        await self.acquire(key)
        try:
            yield
        finally:
            self.release(key)

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def held_keys(self) -> list[str]:
        return [key for key, lock in self._locks.items() if lock.locked()]

    def release_all(self) -> int:
        """Release keys whose holding task has finished. Used at shutdown.

        A key held by a live task is left alone; that task releases it
        itself. Returns how many keys were released.
        """
        released = 0
        for key in self.held_keys():
            owner = self._owners.get(key)
            if owner is None or not owner.done():
                continue
            log.warning("releasing abandoned lock %r at shutdown", key)
            self.release(key)
            released += 1
        return released

    def _unref(self, key: str) -> None:
        remaining = self._refs.get(key, 0) - 1
        if remaining > 0:
            self._refs[key] = remaining
            return
        self._refs.pop(key, None)
        self._locks.pop(key, None)
