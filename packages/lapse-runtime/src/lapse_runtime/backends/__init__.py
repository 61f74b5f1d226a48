"""Host store backends for lapse."""
from __future__ import annotations

from lapse_runtime.backends.sublevel import SubStore, sublevel

__all__ = [
    "SubStore",
    "sublevel",
]
