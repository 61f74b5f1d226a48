"""Lapse Runtime: expiring keys for ordered key-value stores."""
from __future__ import annotations

from lapse_runtime.backends import SubStore, sublevel
from lapse_runtime.backends.memory import MemoryStore
from lapse_runtime.builder import StoreBuilder, open_store
from lapse_runtime.codec import SeparatorCodec, TupleCodec, create_codec
from lapse_runtime.index import ExpiryIndex
from lapse_runtime.lock import KeyLock
from lapse_runtime.protocols import KeyCodec, OrderedStore
from lapse_runtime.sweeper import Sweeper
from lapse_runtime.ttl_store import TTLStore

__all__ = [
    "ExpiryIndex",
    "KeyCodec",
    "KeyLock",
    "MemoryStore",
    "OrderedStore",
    "SeparatorCodec",
    "StoreBuilder",
    "SubStore",
    "Sweeper",
    "TTLStore",
    "TupleCodec",
    "create_codec",
    "open_store",
    "sublevel",
]
