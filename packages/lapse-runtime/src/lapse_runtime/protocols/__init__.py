"""Protocol interfaces for the lapse runtime."""
from __future__ import annotations

from lapse_runtime.protocols.codec import Component, KeyCodec
from lapse_runtime.protocols.store import OrderedStore

__all__ = [
    "Component",
    "KeyCodec",
    "OrderedStore",
]
