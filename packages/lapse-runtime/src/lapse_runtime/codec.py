"""Order-preserving composite key codecs.

Two strategies ship with lapse:

* :class:`SeparatorCodec` joins components with a delimiter (``"!"`` by
  default).  Encodings are human readable, which makes the persisted layout
  easy to inspect, but ordering only holds while components do not contain
  bytes that sort below the separator.
* :class:`TupleCodec` is a type-tagged binary encoding where every component
  is self-delimiting, so any ``bytes``/``str``/``int`` key round-trips and
  sorts correctly.
"""
from __future__ import annotations

import struct
from typing import TYPE_CHECKING

from lapse_core.errors import ConfigError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from lapse_runtime.protocols.codec import Component, KeyCodec

TIMESTAMP_DIGITS = 13


def _check_int(part: object) -> None:
    if isinstance(part, bool):
        raise TypeError("bool is not a valid key component")


class SeparatorCodec:
    """Delimiter-joined encoding; timestamps as 13-digit decimals."""

    name = "separator"

    def __init__(self, separator: str = "!") -> None:
        if not separator:
            raise ConfigError("separator must not be empty")
        self.separator = separator
        self._sep = separator.encode("utf-8")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(separator={self.separator!r})"

    def _part(self, part: Component) -> bytes:
        if isinstance(part, bytes):
            return part
        if isinstance(part, str):
            return part.encode("utf-8")
        if isinstance(part, int):
            _check_int(part)
            if part < 0 or part >= 10 ** TIMESTAMP_DIGITS:
                raise ValueError(
                    f"integer component out of range for "
                    f"{TIMESTAMP_DIGITS}-digit encoding: {part}"
                )
            return str(part).zfill(TIMESTAMP_DIGITS).encode("ascii")
        raise TypeError(
            f"unsupported key component type {type(part).__name__}"
        )

    def encode(self, parts: Sequence[Component]) -> bytes:
        return self._sep.join(self._part(p) for p in parts)

    def decode(self, data: bytes) -> tuple[Component, ...]:
        # Components come back as bytes; callers know which ones are ints.
        return tuple(data.split(self._sep))

    def prefix(self, parts: Sequence[Component]) -> bytes:
        if not parts:
            return b""
        return self.encode(parts) + self._sep


# Type tags; their numeric order defines the order between types.
_BYTES = 0x01
_STR = 0x02
_INT = 0x15

_INT_BIAS = 1 << 63


def _escape(data: bytes) -> bytes:
    return data.replace(b"\x00", b"\x00\xff") + b"\x00"


def _unescape(data: bytes, pos: int) -> tuple[bytes, int]:
    """Read a NUL-terminated component starting at *pos*."""
    out = bytearray()
    while True:
        end = data.find(b"\x00", pos)
        if end < 0:
            raise ValueError("unterminated component")
        out += data[pos:end]
        if end + 1 < len(data) and data[end + 1] == 0xFF:
            out.append(0)
            pos = end + 2
            continue
        return bytes(out), end + 1


class TupleCodec:
    """Type-tagged, self-delimiting binary encoding.

    ``bytes`` and ``str`` components are NUL-terminated with embedded NULs
    escaped as ``00 FF``; integers are signed 64-bit, stored big-endian with
    the sign bit flipped so that byte order equals numeric order.
    """

    name = "tuple"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"

    def encode(self, parts: Sequence[Component]) -> bytes:
        out = bytearray()
        for part in parts:
            if isinstance(part, bytes):
                out.append(_BYTES)
                out += _escape(part)
            elif isinstance(part, str):
                out.append(_STR)
                out += _escape(part.encode("utf-8"))
            elif isinstance(part, int):
                _check_int(part)
                if not -_INT_BIAS <= part < _INT_BIAS:
                    raise ValueError(f"integer component out of range: {part}")
                out.append(_INT)
                out += struct.pack(">Q", part + _INT_BIAS)
            else:
                raise TypeError(
                    f"unsupported key component type {type(part).__name__}"
                )
        return bytes(out)

    def decode(self, data: bytes) -> tuple[Component, ...]:
        parts: list[Component] = []
        pos = 0
        while pos < len(data):
            tag = data[pos]
            pos += 1
            if tag == _BYTES:
                raw, pos = _unescape(data, pos)
                parts.append(raw)
            elif tag == _STR:
                raw, pos = _unescape(data, pos)
                parts.append(raw.decode("utf-8"))
            elif tag == _INT:
                if pos + 8 > len(data):
                    raise ValueError("truncated integer component")
                (biased,) = struct.unpack_from(">Q", data, pos)
                parts.append(biased - _INT_BIAS)
                pos += 8
            else:
                raise ValueError(f"unknown type tag 0x{tag:02x} at {pos - 1}")
        return tuple(parts)

    def prefix(self, parts: Sequence[Component]) -> bytes:
        return self.encode(parts)


def create_codec(encoding: str | KeyCodec = "separator", separator: str = "!") -> KeyCodec:
    """Resolve the ``ttl_encoding`` option to a codec instance."""
    if not isinstance(encoding, str):
        return encoding
    if encoding == "separator":
        return SeparatorCodec(separator)
    if encoding == "tuple":
        return TupleCodec()
    raise ConfigError(f"Unknown ttl_encoding: {encoding!r}")
