"""目录树咨询锁：按 owner 维度的读写锁。

Coordinator 的写操作持有独占锁；打包下载与搜索持有共享锁。
由 ``TREE_LOCKS_ENABLED`` 控制，关闭时两种上下文均为空操作。
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class _ReadWriteLock:
    """写者优先的 asyncio 读写锁：有写者等待时，新读者排队。"""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    async def acquire_read(self) -> None:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._writers_waiting == 0)
            self._readers += 1

    async def release_read(self) -> None:
        async with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    async def acquire_write(self) -> None:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._writers_waiting -= 1
            self._writer = True

    async def release_write(self) -> None:
        async with self._cond:
            self._writer = False
            self._cond.notify_all()


class TreeLockManager:
    def __init__(self, *, enabled: bool) -> None:
        self.enabled = enabled
        self._locks: Dict[int, _ReadWriteLock] = {}

    def _lock_for(self, owner_id: int) -> _ReadWriteLock:
        lock = self._locks.get(owner_id)
        if lock is None:
            lock = self._locks[owner_id] = _ReadWriteLock()
        return lock

    @asynccontextmanager
    async def exclusive(self, owner_id: int) -> AsyncIterator[None]:
        if not self.enabled:
            yield
            return
        lock = self._lock_for(owner_id)
        await lock.acquire_write()
        try:
            yield
        finally:
            await asyncio.shield(lock.release_write())

    @asynccontextmanager
    async def shared(self, owner_id: int) -> AsyncIterator[None]:
        if not self.enabled:
            yield
            return
        lock = self._lock_for(owner_id)
        await lock.acquire_read()
        try:
            yield
        finally:
            await asyncio.shield(lock.release_read())
