"""T0 In-Process Backend: zero dependencies, in-memory only."""
from __future__ import annotations

from lapse_runtime.backends.memory.store import MemoryStore

__all__ = [
    "MemoryStore",
]
