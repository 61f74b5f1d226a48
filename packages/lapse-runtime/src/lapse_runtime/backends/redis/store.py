from __future__ import annotations

from typing import TYPE_CHECKING

from lapse_core.errors import StoreClosedError
from lapse_core.types import BatchOpKind

from lapse_runtime.backends.redis._pool import create_pool

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from lapse_core.types import BatchOp
    from redis.asyncio import Redis


def _lower(gt: bytes | None, gte: bytes | None) -> bytes:
    if gt is not None:
        return b"(" + gt
    if gte is not None:
        return b"[" + gte
    return b"-"


def _upper(lt: bytes | None, lte: bytes | None) -> bytes:
    if lt is not None:
        return b"(" + lt
    if lte is not None:
        return b"[" + lte
    return b"+"


class RedisStore:
    """T2 ordered store: values in a Hash, key order in a Sorted Set.

    Every member of the sorted set has score 0, so ``ZRANGEBYLEX`` walks
    keys in byte order. Writes go through ``MULTI``/``EXEC`` pipelines,
    which keeps the hash and the index in step and makes batches atomic.
    When both ``gt`` and ``gte`` (or ``lt`` and ``lte``) are given, the
    exclusive bound wins.
    """

    def __init__(self, client: Redis, *, prefix: str = "lapse:") -> None:
        self._r = client
        self._prefix = prefix
        self._values = f"{prefix}kv"
        self._order = f"{prefix}kv:order"
        self._closed = False

    @classmethod
    async def create(cls, redis_url: str, *, prefix: str = "lapse:") -> RedisStore:
        client = await create_pool(redis_url)
        return cls(client, prefix=prefix)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(prefix={self._prefix!r})"

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("RedisStore is closed")

    async def get(self, key: bytes) -> bytes | None:
        self._check_open()
        return await self._r.hget(self._values, key)  # type: ignore[return-value]

    async def put(self, key: bytes, value: bytes) -> None:
        self._check_open()
        async with self._r.pipeline(transaction=True) as pipe:
            pipe.hset(self._values, key, value)
            pipe.zadd(self._order, {key: 0})
            await pipe.execute()

    async def delete(self, key: bytes) -> None:
        self._check_open()
        async with self._r.pipeline(transaction=True) as pipe:
            pipe.hdel(self._values, key)
            pipe.zrem(self._order, key)
            await pipe.execute()

    async def batch(self, ops: Sequence[BatchOp]) -> None:
        self._check_open()
        for op in ops:
            if op.kind is BatchOpKind.PUT and op.value is None:
                raise ValueError(f"batch put without value for {op.key!r}")
        if not ops:
            return
        async with self._r.pipeline(transaction=True) as pipe:
            for op in ops:
                if op.kind is BatchOpKind.PUT:
                    pipe.hset(self._values, op.key, op.value)
                    pipe.zadd(self._order, {op.key: 0})
                else:
                    pipe.hdel(self._values, op.key)
                    pipe.zrem(self._order, op.key)
            await pipe.execute()

    async def iterate(
        self,
        *,
        gt: bytes | None = None,
        gte: bytes | None = None,
        lt: bytes | None = None,
        lte: bytes | None = None,
        reverse: bool = False,
        limit: int | None = None,
    ) -> AsyncIterator[tuple[bytes, bytes]]:
        self._check_open()
        low, high = _lower(gt, gte), _upper(lt, lte)
        start, num = (0, limit) if limit is not None else (None, None)
        if reverse:
            keys = await self._r.zrevrangebylex(self._order, high, low, start=start, num=num)
        else:
            keys = await self._r.zrangebylex(self._order, low, high, start=start, num=num)
        if not keys:
            return
        values = await self._r.hmget(self._values, keys)
        for key, value in zip(keys, values):
            # Deleted between the two reads.
            if value is not None:
                yield key, value

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._r.aclose()
