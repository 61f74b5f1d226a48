from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from lapse_core.types import BatchOp


@runtime_checkable
class OrderedStore(Protocol):
    """Ordered byte key-value store hosting data and expiry metadata.

    ``get`` returns None for a missing key. ``batch`` applies every
    operation or none. ``iterate`` yields ``(key, value)`` pairs in
    ascending byte order within the given bounds.
    """

    async def get(self, key: bytes) -> bytes | None: ...
    async def put(self, key: bytes, value: bytes) -> None: ...
    async def delete(self, key: bytes) -> None: ...
    async def batch(self, ops: Sequence[BatchOp]) -> None: ...
    def iterate(
        self,
        *,
        gt: bytes | None = None,
        gte: bytes | None = None,
        lt: bytes | None = None,
        lte: bytes | None = None,
        reverse: bool = False,
        limit: int | None = None,
    ) -> AsyncIterator[tuple[bytes, bytes]]: ...
    async def close(self) -> None: ...
