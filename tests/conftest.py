import asyncio

import pytest

from store import MemoryStore, TableSchema, new_id, utc_now


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(interval)


class FakeClock:

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


LEGACY_TABLES = {
    "messages": TableSchema(
        columns=("id", "session_id", "sender", "content", "prompt", "created_at"),
        unique=(("id",),),
        defaults={"id": new_id, "created_at": utc_now},
    ),
    "capsules": TableSchema(
        columns=("id", "session_id", "author", "message", "unlock_date", "sealed", "created_at"),
        unique=(("id",),),
        defaults={"id": new_id, "sealed": True, "created_at": utc_now},
    ),
}


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()
