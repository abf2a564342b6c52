import asyncio

import pytest

from app.packages.drive.core.locks import TreeLockManager


@pytest.mark.asyncio
async def test_exclusive_waits_for_readers():
    locks = TreeLockManager(enabled=True)
    events = []
    reader_in = asyncio.Event()
    release_reader = asyncio.Event()

    async def reader():
        async with locks.shared(1):
            events.append("read-start")
            reader_in.set()
            await release_reader.wait()
            events.append("read-end")

    async def writer():
        await reader_in.wait()
        async with locks.exclusive(1):
            events.append("write")

    tasks = [asyncio.create_task(reader()), asyncio.create_task(writer())]
    await reader_in.wait()
    await asyncio.sleep(0)
    assert events == ["read-start"]
    release_reader.set()
    await asyncio.gather(*tasks)
    assert events == ["read-start", "read-end", "write"]


@pytest.mark.asyncio
async def test_owners_do_not_block_each_other():
    locks = TreeLockManager(enabled=True)
    async with locks.exclusive(1):
        await asyncio.wait_for(_enter(locks.exclusive(2)), timeout=1)


@pytest.mark.asyncio
async def test_disabled_manager_is_noop():
    locks = TreeLockManager(enabled=False)
    async with locks.exclusive(1):
        await asyncio.wait_for(_enter(locks.exclusive(1)), timeout=1)


async def _enter(ctx):
    async with ctx:
        return True
