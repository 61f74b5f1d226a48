from __future__ import annotations

import asyncio

import pytest
from lapse_core.types import SweepState
from lapse_runtime.backends import sublevel
from lapse_runtime.backends.memory import MemoryStore
from lapse_runtime.codec import SeparatorCodec
from lapse_runtime.index import ExpiryIndex
from lapse_runtime.sweeper import Sweeper


class GatedStore(MemoryStore):
    """MemoryStore whose range scans pause on ``gate`` after reading."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.scanning = asyncio.Event()

    async def iterate(self, **bounds):
        entries = [entry async for entry in super().iterate(**bounds)]
        self.scanning.set()
        await self.gate.wait()
        for entry in entries:
            yield entry


class FailingBatchStore(MemoryStore):
    fail = False

    async def batch(self, ops):
        if self.fail:
            raise OSError("disk full")
        await super().batch(ops)


async def _keys(store):
    return [k async for k, _ in store.iterate()]


def _make(store, clock, *, meta=None, errors=None):
    index = ExpiryIndex(meta if meta is not None else store, SeparatorCodec())
    sweeper = Sweeper(
        index,
        store,
        check_frequency_ms=10_000,
        clock=clock,
        on_error=errors.append if errors is not None else None,
    )
    return index, sweeper


class TestSweep:
    async def test_purges_due_keys(self, clock):
        store = MemoryStore()
        index, sweeper = _make(store, clock)
        await store.put(b"due", b"v")
        await store.put(b"later", b"v")
        await store.put(b"plain", b"v")
        await index.set_expiry([b"due"], clock.now + 100)
        await index.set_expiry([b"later"], clock.now + 10_000)

        clock.advance(200)
        result = await sweeper.sweep()

        assert result.ok
        assert result.purged == [b"due"]
        assert result.due == 1
        assert await store.get(b"due") is None
        assert await index.get_expiry(b"due") is None
        assert await store.get(b"later") == b"v"
        assert await store.get(b"plain") == b"v"
        assert sweeper.state is SweepState.IDLE

    async def test_nothing_due(self, clock):
        store = MemoryStore()
        index, sweeper = _make(store, clock)
        await index.set_expiry([b"k"], clock.now + 100)
        result = await sweeper.sweep()
        assert result.due == 0
        assert result.purged == []

    async def test_split_stores(self, clock):
        parent = MemoryStore()
        meta = sublevel(parent, "meta")
        index, sweeper = _make(parent, clock, meta=meta)
        keys = [f"k{i}".encode() for i in range(5)]
        for key in keys:
            await parent.put(key, b"v")
        await index.set_expiry(keys, clock.now + 50)

        clock.advance(100)
        result = await sweeper.sweep()

        assert sorted(result.purged) == keys
        assert await _keys(parent) == []

    async def test_renewed_key_is_kept(self, clock):
        store = GatedStore()
        index, sweeper = _make(store, clock)
        await store.put(b"k", b"v")
        await index.set_expiry([b"k"], clock.now + 10)
        clock.advance(20)

        task = sweeper.tick()
        await store.scanning.wait()
        # Renewal lands between the scan and the purge.
        await index.set_expiry([b"k"], clock.now + 10_000)
        store.gate.set()
        result = await task

        assert result.purged == []
        assert result.stale == 1
        assert await index.get_expiry(b"k") == clock.now + 10_000
        assert await store.get(b"k") == b"v"
        entries = [k async for k, _ in store.iterate(gte=b"ttl!x!", lt=b"ttl!y")]
        assert entries == [index.schedule_key(clock.now + 10_000, b"k")]

    async def test_orphan_schedule_entry_is_dropped(self, clock):
        store = MemoryStore()
        index, sweeper = _make(store, clock)
        await store.put(b"k", b"v")
        await store.put(index.schedule_key(clock.now - 1, b"k"), b"k")

        result = await sweeper.sweep()

        assert result.stale == 1
        assert result.purged == []
        assert await store.get(b"k") == b"v"
        assert await _keys(store) == [b"k"]


class TestSweepErrors:
    async def test_error_is_reported_and_state_recovers(self, clock):
        store = FailingBatchStore()
        errors: list[BaseException] = []
        index, sweeper = _make(store, clock, errors=errors)
        await store.put(b"k", b"v")
        await index.set_expiry([b"k"], clock.now + 10)
        clock.advance(20)

        store.fail = True
        result = await sweeper.sweep()
        assert not result.ok
        assert isinstance(errors[0], OSError)
        assert sweeper.state is SweepState.IDLE

        # Next sweep retries the entry left behind.
        store.fail = False
        result = await sweeper.sweep()
        assert result.purged == [b"k"]
        assert await store.get(b"k") is None


class TestSweepStateMachine:
    async def test_tick_during_scan_is_dropped(self, clock):
        store = GatedStore()
        _, sweeper = _make(store, clock)
        task = sweeper.tick()
        await store.scanning.wait()
        assert sweeper.state is SweepState.SCANNING
        assert sweeper.tick() is None
        store.gate.set()
        await task
        assert sweeper.state is SweepState.IDLE

    async def test_sweep_joins_inflight_scan(self, clock):
        store = GatedStore()
        _, sweeper = _make(store, clock)
        task = sweeper.tick()
        await store.scanning.wait()
        joined = asyncio.ensure_future(sweeper.sweep())
        store.gate.set()
        assert await joined is await task

    async def test_stop_during_scan_is_deferred(self, clock):
        store = GatedStore()
        index, sweeper = _make(store, clock)
        sweeper.start()
        await store.put(b"k", b"v")
        await index.set_expiry([b"k"], clock.now + 10)
        clock.advance(20)

        task = sweeper.tick()
        await store.scanning.wait()
        sweeper.stop()
        assert sweeper.state is SweepState.STOP_PENDING
        assert sweeper.running

        store.gate.set()
        result = await task
        assert result.purged == [b"k"]
        assert await store.get(b"k") is None
        assert sweeper.state is SweepState.STOPPED
        await sweeper.wait_stopped()
        assert not sweeper.running

    async def test_stop_while_idle_is_immediate(self, clock):
        _, sweeper = _make(MemoryStore(), clock)
        sweeper.start()
        assert sweeper.running
        sweeper.stop()
        assert sweeper.state is SweepState.STOPPED
        await asyncio.wait_for(sweeper.wait_stopped(), timeout=1)
        assert not sweeper.running
        sweeper.stop()  # already stopped

    async def test_sweep_after_stop_raises(self, clock):
        _, sweeper = _make(MemoryStore(), clock)
        sweeper.stop()
        with pytest.raises(RuntimeError):
            await sweeper.sweep()

    async def test_restart_after_stop(self, clock):
        _, sweeper = _make(MemoryStore(), clock)
        sweeper.start()
        sweeper.stop()
        await sweeper.wait_stopped()
        sweeper.start()
        assert sweeper.state is SweepState.IDLE
        assert sweeper.running
        sweeper.stop()
        await sweeper.wait_stopped()

    async def test_timer_triggers_sweeps(self):
        store = MemoryStore()
        index = ExpiryIndex(store, SeparatorCodec())
        sweeper = Sweeper(index, store, check_frequency_ms=20)
        await store.put(b"k", b"v")
        await index.set_expiry([b"k"], 0)
        sweeper.start()
        try:
            await asyncio.sleep(0.15)
            assert await store.get(b"k") is None
            assert sweeper.last_result is not None
        finally:
            sweeper.stop()
            await sweeper.wait_stopped()
