"""T2 Redis Backend: shared, Redis-backed ordered store."""
from __future__ import annotations

from lapse_runtime.backends.redis.store import RedisStore

__all__ = [
    "RedisStore",
]
