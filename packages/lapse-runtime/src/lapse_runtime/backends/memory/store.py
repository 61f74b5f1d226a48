from __future__ import annotations

import bisect
from typing import TYPE_CHECKING

from lapse_core.errors import StoreClosedError
from lapse_core.types import BatchOpKind

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from lapse_core.types import BatchOp


class MemoryStore:
    """T0 ordered store: dict for values, sorted key list for ranges."""

    def __init__(self) -> None:
        self._data: dict[bytes, bytes] = {}
        self._keys: list[bytes] = []
        self._closed = False

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(keys={len(self._data)})"

    def __len__(self) -> int:
        return len(self._data)

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("MemoryStore is closed")

    def _write(self, key: bytes, value: bytes) -> None:
        if key not in self._data:
            bisect.insort(self._keys, key)
        self._data[key] = value

    def _remove(self, key: bytes) -> None:
        if self._data.pop(key, None) is not None:
            del self._keys[bisect.bisect_left(self._keys, key)]

    async def get(self, key: bytes) -> bytes | None:
        self._check_open()
        return self._data.get(key)

    async def put(self, key: bytes, value: bytes) -> None:
        self._check_open()
        self._write(key, value)

    async def delete(self, key: bytes) -> None:
        self._check_open()
        self._remove(key)

    async def batch(self, ops: Sequence[BatchOp]) -> None:
        self._check_open()
        for op in ops:
            if op.kind is BatchOpKind.PUT and op.value is None:
                raise ValueError(f"batch put without value for {op.key!r}")
        # No await below: the batch is applied without interleaving.
        for op in ops:
            if op.kind is BatchOpKind.PUT:
                self._write(op.key, op.value)
            else:
                self._remove(op.key)

    async def iterate(
        self,
        *,
        gt: bytes | None = None,
        gte: bytes | None = None,
        lt: bytes | None = None,
        lte: bytes | None = None,
        reverse: bool = False,
        limit: int | None = None,
    ) -> AsyncIterator[tuple[bytes, bytes]]:
        self._check_open()
        start, end = 0, len(self._keys)
        if gte is not None:
            start = max(start, bisect.bisect_left(self._keys, gte))
        if gt is not None:
            start = max(start, bisect.bisect_right(self._keys, gt))
        if lte is not None:
            end = min(end, bisect.bisect_right(self._keys, lte))
        if lt is not None:
            end = min(end, bisect.bisect_left(self._keys, lt))

        # Snapshot so writes during iteration do not shift the window.
        keys = self._keys[start:end] if start < end else []
        if reverse:
            keys.reverse()
        if limit is not None:
            keys = keys[:limit]
        entries = [(key, self._data[key]) for key in keys]
        for entry in entries:
            yield entry

    async def close(self) -> None:
        self._closed = True
