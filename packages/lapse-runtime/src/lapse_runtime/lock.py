from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable


@dataclass(slots=True)
class _Slot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyLock:
    """Per-key mutual exclusion for expiry index mutations.

    Locks are created on first use and dropped once no task holds or waits
    on them, so the table only tracks keys with in-flight work.
    """

    def __init__(self) -> None:
        self._slots: dict[bytes, _Slot] = {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(active={len(self._slots)})"

    def __len__(self) -> int:
        return len(self._slots)

    def locked(self, key: bytes) -> bool:
        slot = self._slots.get(key)
        return slot is not None and slot.lock.locked()

    def _checkout(self, key: bytes) -> _Slot:
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _Slot()
        slot.users += 1
        return slot

    def _checkin(self, key: bytes) -> None:
        slot = self._slots[key]
        slot.users -= 1
        if slot.users == 0:
            del self._slots[key]

    @contextlib.asynccontextmanager
    async def hold(self, keys: Iterable[bytes]) -> AsyncIterator[None]:
        """Hold the locks of every key in *keys* for the body of the block.

        Keys are acquired in sorted order so overlapping key sets taken by
        concurrent tasks cannot deadlock.
        """
        ordered = sorted(set(keys))
        held: list[bytes] = []
        try:
            for key in ordered:
                slot = self._checkout(key)
                try:
                    await slot.lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                held.append(key)
            yield
        finally:
            for key in reversed(held):
                self._slots[key].lock.release()
                self._checkin(key)
