from __future__ import annotations

import contextlib
import tempfile
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def memory_store():
    from lapse_runtime.backends.memory import MemoryStore
    store = MemoryStore()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def sqlite_db_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "test.db")


@pytest_asyncio.fixture
async def sqlite_store(sqlite_db_path):
    from lapse_runtime.backends.sqlite import SQLiteStore
    store = await SQLiteStore.create(sqlite_db_path)
    yield store
    await store.close()


# ---------------------------------------------------------------------------
# T2 Redis fixtures
# ---------------------------------------------------------------------------

def _redis_prefix() -> str:
    return f"test_{uuid4().hex[:8]}:"


@pytest_asyncio.fixture
async def redis_store():
    pytest.importorskip("redis")
    from lapse_runtime.backends.redis import RedisStore
    prefix = _redis_prefix()
    try:
        store = await RedisStore.create("redis://localhost:6379", prefix=prefix)
    except Exception:
        pytest.skip("Redis not available")
    yield store
    # cleanup: delete keys matching our test prefix
    client = store._r
    with contextlib.suppress(Exception):
        async for key in client.scan_iter(match=f"{prefix}*"):
            await client.delete(key)
    await store.close()


@pytest_asyncio.fixture
async def sub_store():
    """Sub-store view over a fresh memory store."""
    from lapse_runtime.backends import sublevel
    from lapse_runtime.backends.memory import MemoryStore
    parent = MemoryStore()
    yield sublevel(parent, "meta")
    await parent.close()
