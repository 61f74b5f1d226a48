from __future__ import annotations

import enum
from dataclasses import dataclass, field

# ── Store Types ──────────────────────────────────────────────────────

Key = bytes | str
Value = bytes | str


class BatchOpKind(enum.Enum):
    PUT = "put"
    DEL = "del"


@dataclass(frozen=True, slots=True)
class BatchOp:
    """One operation of an atomic batch."""
    kind: BatchOpKind
    key: Key | None
    value: Value | None = None

    @classmethod
    def put(cls, key: Key, value: Value) -> BatchOp:
        return cls(BatchOpKind.PUT, key, value)

    @classmethod
    def delete(cls, key: Key) -> BatchOp:
        return cls(BatchOpKind.DEL, key)


def to_bytes(data: Key) -> bytes:
    """Normalise a str/bytes key or value to bytes (UTF-8 for str)."""
    if isinstance(data, bytes):
        return data
    if isinstance(data, (bytearray, memoryview)):
        return bytes(data)
    if isinstance(data, str):
        return data.encode("utf-8")
    raise TypeError(f"expected bytes or str, got {type(data).__name__}")


# ── Sweep Types ──────────────────────────────────────────────────────

class SweepState(enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    STOP_PENDING = "stop_pending"
    STOPPED = "stopped"


@dataclass(slots=True)
class SweepResult:
    """Outcome of one sweep."""
    started_at_ms: int
    due: int = 0
    purged: list[bytes] = field(default_factory=list)
    stale: int = 0
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
