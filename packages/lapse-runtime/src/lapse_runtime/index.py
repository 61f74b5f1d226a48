from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from lapse_core.logging import get_logger
from lapse_core.types import BatchOp

from lapse_runtime.lock import KeyLock

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Sequence

    from lapse_runtime.protocols.codec import KeyCodec
    from lapse_runtime.protocols.store import OrderedStore

logger = get_logger("index")


def _unique(keys: Iterable[bytes]) -> list[bytes]:
    return list(dict.fromkeys(keys))


class ExpiryIndex:
    """Expiry metadata for TTL'd keys.

    Every TTL'd key owns exactly two records in the metadata store:

    * an *expiry marker* ``namespace + (key,) -> (expiry_ms,)`` used to find
      the current expiry of a key, and
    * a *schedule entry* ``namespace + (expiry_namespace, expiry_ms, key) ->
      key`` whose keys sort by time, so that due keys are a single range scan.

    Mutations for a key are serialized through :attr:`lock`.
    """

    def __init__(
        self,
        store: OrderedStore,
        codec: KeyCodec,
        *,
        namespace: str = "ttl",
        expiry_namespace: str = "x",
        lock: KeyLock | None = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.lock = lock or KeyLock()
        self._prefix_ns: tuple[str, ...] = (namespace,) if namespace else ()
        self._expiry_ns = (*self._prefix_ns, expiry_namespace)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(codec={self.codec!r}, "
            f"expiry_ns={self._expiry_ns!r})"
        )

    # ── Layout ──────────────────────────────────────────────────────

    def marker_key(self, key: bytes) -> bytes:
        return self.codec.encode((*self._prefix_ns, key))

    def schedule_key(self, expiry_ms: int, key: bytes) -> bytes:
        return self.codec.encode((*self._expiry_ns, expiry_ms, key))

    def encode_expiry(self, expiry_ms: int) -> bytes:
        return self.codec.encode((expiry_ms,))

    def decode_expiry(self, raw: bytes) -> int:
        (part,) = self.codec.decode(raw)
        return int(part)

    def due_range(self, now_ms: int) -> tuple[bytes, bytes]:
        """Inclusive ``(gte, lte)`` bounds of the schedule entries due at *now_ms*."""
        return (
            self.codec.prefix(self._expiry_ns),
            self.codec.encode((*self._expiry_ns, now_ms)),
        )

    # ── Reads ───────────────────────────────────────────────────────

    async def get_expiry(self, key: bytes) -> int | None:
        raw = await self.store.get(self.marker_key(key))
        if raw is None:
            return None
        return self.decode_expiry(raw)

    async def iter_due(self, now_ms: int) -> AsyncIterator[tuple[bytes, bytes]]:
        """Yield ``(schedule_key, key)`` for entries due at *now_ms*, oldest first."""
        gte, lte = self.due_range(now_ms)
        async for schedule_key, key in self.store.iterate(gte=gte, lte=lte):
            yield schedule_key, key

    # ── Mutations ───────────────────────────────────────────────────

    async def set_expiry(self, keys: Sequence[bytes], expiry_ms: int) -> None:
        """Give every key in *keys* a single expiry at *expiry_ms*.

        Any previous marker/schedule pair is deleted in the same atomic
        batch that writes the new pair.
        """
        keys = _unique(keys)
        if not keys:
            return
        async with self.lock.hold(keys):
            await self.set_expiry_locked(keys, expiry_ms)

    async def set_expiry_locked(self, keys: Sequence[bytes], expiry_ms: int) -> None:
        """Like :meth:`set_expiry`; the caller already holds :attr:`lock` for *keys*."""
        keys = _unique(keys)
        if not keys:
            return
        ops = await self._clear_ops(keys)
        expiry = self.encode_expiry(expiry_ms)
        for key in keys:
            ops.append(BatchOp.put(self.schedule_key(expiry_ms, key), key))
            ops.append(BatchOp.put(self.marker_key(key), expiry))
        await self.store.batch(ops)
        logger.debug("Expiry set for %d key(s) at %d", len(keys), expiry_ms)

    async def clear_expiry(self, keys: Sequence[bytes]) -> None:
        """Drop the expiry of every key in *keys*; keys without one are skipped."""
        keys = _unique(keys)
        if not keys:
            return
        async with self.lock.hold(keys):
            ops = await self._clear_ops(keys)
            if ops:
                await self.store.batch(ops)

    async def _clear_ops(self, keys: list[bytes]) -> list[BatchOp]:
        markers = await asyncio.gather(
            *(self.store.get(self.marker_key(key)) for key in keys)
        )
        ops: list[BatchOp] = []
        for key, raw in zip(keys, markers):
            if raw is None:
                continue
            ops.append(BatchOp.delete(self.schedule_key(self.decode_expiry(raw), key)))
            ops.append(BatchOp.delete(self.marker_key(key)))
        return ops
