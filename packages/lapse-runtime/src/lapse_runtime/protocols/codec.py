from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Sequence

Component = str | bytes | int


@runtime_checkable
class KeyCodec(Protocol):
    """Order-preserving encoding of composite keys.

    For any two tuples ``a < b`` (compared component by component),
    ``encode(a) < encode(b)`` as bytes. ``prefix(parts)`` is a prefix of
    ``encode(parts + rest)`` for every non-empty ``rest``.
    """

    name: str

    def encode(self, parts: Sequence[Component]) -> bytes: ...
    def decode(self, data: bytes) -> tuple[Component, ...]: ...
    def prefix(self, parts: Sequence[Component]) -> bytes: ...
