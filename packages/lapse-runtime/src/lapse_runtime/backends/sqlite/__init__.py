"""T1 SQLite Backend: persistent, zero external infrastructure."""
from __future__ import annotations

from lapse_runtime.backends.sqlite.store import SQLiteStore

__all__ = [
    "SQLiteStore",
]
