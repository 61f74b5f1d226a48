"""Isolated key namespaces carved out of a parent ordered store."""
from __future__ import annotations

from typing import TYPE_CHECKING

from lapse_core.types import BatchOp

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from lapse_runtime.protocols.store import OrderedStore


def _successor(prefix: bytes) -> bytes | None:
    """Smallest byte string greater than every string starting with *prefix*."""
    stripped = prefix.rstrip(b"\xff")
    if not stripped:
        return None
    return stripped[:-1] + bytes([stripped[-1] + 1])


class SubStore:
    """A view of *parent* restricted to keys starting with *prefix*.

    Keys are stored in the parent as ``prefix + key`` and reported without
    the prefix. Closing a sub-store leaves the parent open.
    """

    def __init__(self, parent: OrderedStore, prefix: bytes) -> None:
        if not prefix:
            raise ValueError("sub-store prefix must not be empty")
        self.parent = parent
        self.prefix = prefix
        self._end = _successor(prefix)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(prefix={self.prefix!r}, parent={self.parent!r})"

    async def get(self, key: bytes) -> bytes | None:
        return await self.parent.get(self.prefix + key)

    async def put(self, key: bytes, value: bytes) -> None:
        await self.parent.put(self.prefix + key, value)

    async def delete(self, key: bytes) -> None:
        await self.parent.delete(self.prefix + key)

    async def batch(self, ops: Sequence[BatchOp]) -> None:
        await self.parent.batch([
            BatchOp(op.kind, self.prefix + op.key, op.value) for op in ops
        ])

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
        p = self.prefix
        bounds: dict[str, bytes | None] = {
            "gt": p + gt if gt is not None else None,
            "gte": p + gte if gte is not None else None,
            "lt": p + lt if lt is not None else None,
            "lte": p + lte if lte is not None else None,
        }
        if gt is None and gte is None:
            bounds["gte"] = p
        if lt is None and lte is None:
            bounds["lt"] = self._end
        async for key, value in self.parent.iterate(
            **bounds, reverse=reverse, limit=limit
        ):
            if not key.startswith(p):
                continue
            yield key[len(p):], value

    async def close(self) -> None:
        pass


def sublevel(parent: OrderedStore, name: str, separator: str = "!") -> SubStore:
    """Namespace *name* inside *parent*, stored under ``!name!`` keys."""
    return SubStore(parent, f"{separator}{name}{separator}".encode())
