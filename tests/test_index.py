from __future__ import annotations

import asyncio

import pytest
from lapse_runtime.backends.memory import MemoryStore
from lapse_runtime.codec import SeparatorCodec, TupleCodec
from lapse_runtime.index import ExpiryIndex


class YieldingStore(MemoryStore):
    """MemoryStore that suspends before every call, to expose races."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def batch(self, ops):
        await asyncio.sleep(0)
        await super().batch(ops)


@pytest.fixture(params=["memory", "sqlite"])
def meta_store(request):
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def index(meta_store):
    return ExpiryIndex(meta_store, SeparatorCodec())


async def _entries(store):
    return [entry async for entry in store.iterate()]


class TestLayout:
    def test_default_keys(self):
        index = ExpiryIndex(MemoryStore(), SeparatorCodec())
        assert index.marker_key(b"bar") == b"ttl!bar"
        assert index.schedule_key(1100, b"bar") == b"ttl!x!0000000001100!bar"
        assert index.due_range(2000) == (b"ttl!x!", b"ttl!x!0000000002000")

    def test_empty_namespace(self):
        index = ExpiryIndex(MemoryStore(), SeparatorCodec(), namespace="")
        assert index.marker_key(b"bar") == b"bar"
        assert index.schedule_key(1, b"bar") == b"x!0000000000001!bar"

    def test_custom_namespaces(self):
        index = ExpiryIndex(
            MemoryStore(), SeparatorCodec(), namespace="meta", expiry_namespace="due",
        )
        assert index.schedule_key(1, b"k").startswith(b"meta!due!")


class TestExpiryIndex:
    async def test_set_expiry_writes_pair(self, index, meta_store):
        await index.set_expiry([b"bar"], 1100)
        assert await _entries(meta_store) == [
            (b"ttl!bar", b"0000000001100"),
            (b"ttl!x!0000000001100!bar", b"bar"),
        ]
        assert await index.get_expiry(b"bar") == 1100

    async def test_renewal_replaces_pair(self, index, meta_store):
        await index.set_expiry([b"bar"], 1100)
        await index.set_expiry([b"bar"], 1500)
        assert await _entries(meta_store) == [
            (b"ttl!bar", b"0000000001500"),
            (b"ttl!x!0000000001500!bar", b"bar"),
        ]

    async def test_renewal_with_same_timestamp(self, index, meta_store):
        await index.set_expiry([b"bar"], 1100)
        await index.set_expiry([b"bar"], 1100)
        assert len(await _entries(meta_store)) == 2

    async def test_clear_expiry(self, index, meta_store):
        await index.set_expiry([b"a", b"b"], 1100)
        await index.clear_expiry([b"a"])
        assert await index.get_expiry(b"a") is None
        assert await index.get_expiry(b"b") == 1100
        assert len(await _entries(meta_store)) == 2

    async def test_clear_without_ttl_is_noop(self, index, meta_store):
        await index.clear_expiry([b"never-set"])
        await index.clear_expiry([b"never-set"])
        assert await _entries(meta_store) == []

    async def test_empty_key_lists(self, index, meta_store):
        await index.set_expiry([], 1100)
        await index.clear_expiry([])
        assert await _entries(meta_store) == []

    async def test_duplicate_keys_collapse(self, index, meta_store):
        await index.set_expiry([b"k", b"k"], 1100)
        assert len(await _entries(meta_store)) == 2

    async def test_iter_due(self, index):
        await index.set_expiry([b"late"], 3000)
        await index.set_expiry([b"early"], 1000)
        await index.set_expiry([b"mid"], 2000)
        due = [key async for _, key in index.iter_due(2000)]
        assert due == [b"early"]
        due = [key async for _, key in index.iter_due(2001)]
        assert due == [b"early", b"mid"]

    async def test_due_scan_skips_markers(self, index):
        # The marker of key "x" encodes to b"ttl!x", right below the scan range.
        await index.set_expiry([b"x"], 5000)
        assert [k async for _, k in index.iter_due(1000)] == []


class TestConcurrentRenewal:
    async def test_many_renewals_leave_one_entry(self):
        store = YieldingStore()
        index = ExpiryIndex(store, SeparatorCodec())
        await asyncio.gather(
            *(index.set_expiry([b"bar"], 1000 + i) for i in range(50))
        )
        entries = await _entries(store)
        schedule = [k for k, _ in entries if k.startswith(b"ttl!x!")]
        assert len(schedule) == 1
        expiry = await index.get_expiry(b"bar")
        assert schedule[0] == index.schedule_key(expiry, b"bar")

    async def test_interleaved_set_and_clear(self):
        store = YieldingStore()
        index = ExpiryIndex(store, SeparatorCodec())
        ops = []
        for i in range(20):
            ops.append(index.set_expiry([b"a", b"b"], 1000 + i))
            ops.append(index.clear_expiry([b"b"]))
        await asyncio.gather(*ops)
        for key in (b"a", b"b"):
            expiry = await index.get_expiry(key)
            schedule = [
                k for k, v in await _entries(store)
                if k.startswith(b"ttl!x!") and v == key
            ]
            if expiry is None:
                assert schedule == []
            else:
                assert schedule == [index.schedule_key(expiry, key)]


class TestTupleCodecIndex:
    async def test_keys_containing_separator(self):
        store = MemoryStore()
        index = ExpiryIndex(store, TupleCodec())
        await index.set_expiry([b"x!0000000000001"], 5000)
        await index.set_expiry([b"plain"], 1000)
        assert await index.get_expiry(b"x!0000000000001") == 5000
        due = [key async for _, key in index.iter_due(2000)]
        assert due == [b"plain"]
