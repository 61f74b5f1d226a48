from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Any

from lapse_core.config import TTLConfig
from lapse_core.errors import InvalidKeyError, InvalidValueError, PartialWriteError
from lapse_core.logging import get_logger
from lapse_core.types import BatchOp, BatchOpKind, to_bytes

from lapse_runtime.codec import create_codec
from lapse_runtime.index import ExpiryIndex
from lapse_runtime.sweeper import Sweeper, now_ms

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterable, Sequence

    from lapse_core.types import Key, Value

    from lapse_runtime.protocols.codec import KeyCodec
    from lapse_runtime.protocols.store import OrderedStore

logger = get_logger("store")
_TTL_METHODS = ("put", "delete", "batch", "ttl", "stop")


def _check_key(key: Key | None) -> bytes:
    if key is None:
        raise InvalidKeyError("Key cannot be None")
    return to_bytes(key)


def _check_op(op: BatchOp) -> BatchOp:
    key = _check_key(op.key)
    if op.kind is BatchOpKind.DEL:
        return BatchOp.delete(key)
    if op.value is None:
        raise InvalidValueError(f"Value cannot be None (key {key!r})")
    return BatchOp.put(key, to_bytes(op.value))


class TTLStore:
    """An :class:`OrderedStore` wrapper whose keys can expire.

    Mutating calls keep the :class:`ExpiryIndex` in sync before delegating
    to the wrapped store; a :class:`Sweeper` deletes keys once they are due.
    Expiry metadata lives in the wrapped store under ``config.namespace``,
    or in *sub* when one is given.

    Usage::

        store = await TTLStore.create(MemoryStore(), TTLConfig(check_frequency_ms=1000))
        await store.put(b"session", b"...", ttl=30_000)
        ...
        await store.close()

    With ``config.method_prefix`` set (e.g. ``"ttl_"``) the expiring
    operations are reachable as ``ttl_put``/``ttl_delete``/``ttl_batch``
    and the plain ``put``/``delete``/``batch`` go straight to the wrapped
    store.
    """

    def __init__(
        self,
        store: OrderedStore,
        config: TTLConfig | None = None,
        *,
        sub: OrderedStore | None = None,
        codec: KeyCodec | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._config = config = config or TTLConfig()
        self._store = store
        self._sub = sub
        self._clock = clock
        self._method_prefix = config.method_prefix
        self._listeners: list[Callable[[BaseException], Any]] = []
        self._background: set[asyncio.Task[Any]] = set()
        self._closed = False

        self.index = ExpiryIndex(
            sub if sub is not None else store,
            codec or create_codec(config.ttl_encoding, config.separator),
            namespace=config.resolved_namespace(sub is not None),
            expiry_namespace=config.expiry_namespace,
        )
        self.sweeper = Sweeper(
            self.index,
            store,
            check_frequency_ms=config.check_frequency_ms,
            clock=clock,
            on_error=self._report_error,
        )

    @classmethod
    async def create(
        cls,
        store: OrderedStore,
        config: TTLConfig | None = None,
        **kwargs: Any,
    ) -> TTLStore:
        """Wrap *store* and start the sweeper."""
        ttl_store = cls(store, config, **kwargs)
        ttl_store.sweeper.start()
        return ttl_store

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(store={self._store!r}, "
            f"sweeper={self.sweeper.state.value})"
        )

    def __getattr__(self, name: str) -> Any:
        prefix = self.__dict__.get("_method_prefix")
        if prefix and name.startswith(prefix):
            op = name[len(prefix):]
            if op in _TTL_METHODS:
                return getattr(self, f"_ttl_{op}")
        raise AttributeError(
            f"{type(self).__name__!r} object has no attribute {name!r}"
        )

    async def __aenter__(self) -> TTLStore:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def config(self) -> TTLConfig:
        return self._config

    @property
    def store(self) -> OrderedStore:
        return self._store

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Reads (pass-through) ────────────────────────────────────────

    async def get(self, key: Key) -> bytes | None:
        return await self._store.get(_check_key(key))

    async def get_many(self, keys: Iterable[Key]) -> list[bytes | None]:
        return list(await asyncio.gather(*(self.get(key) for key in keys)))

    def iterate(self, **bounds: Any) -> AsyncIterator[tuple[bytes, bytes]]:
        return self._store.iterate(**bounds)

    async def expires_at(self, key: Key) -> int | None:
        """Expiry of *key* in epoch milliseconds, or None without a TTL."""
        return await self.index.get_expiry(_check_key(key))

    # ── Public mutations ────────────────────────────────────────────

    async def put(self, key: Key, value: Value, *, ttl: int | None = None) -> None:
        if self._method_prefix:
            await self._store.put(_check_key(key), to_bytes(value))
            return
        await self._ttl_put(key, value, ttl=ttl)

    async def delete(self, key: Key) -> None:
        if self._method_prefix:
            await self._store.delete(_check_key(key))
            return
        await self._ttl_delete(key)

    async def batch(self, ops: Sequence[BatchOp], *, ttl: int | None = None) -> None:
        if self._method_prefix:
            await self._store.batch([_check_op(op) for op in ops])
            return
        await self._ttl_batch(ops, ttl=ttl)

    def ttl(self, key: Key, delay_ms: int) -> asyncio.Task[None] | None:
        return self._ttl_ttl(key, delay_ms)

    def stop(self) -> None:
        self._ttl_stop()

    async def close(self) -> None:
        """Stop the sweeper, wait for an in-flight sweep, close the store."""
        if self._closed:
            return
        self._closed = True
        self.sweeper.stop()
        await self.sweeper.wait_stopped()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._store.close()
        logger.debug("Store closed")

    # ── Error channel ───────────────────────────────────────────────

    def add_error_listener(self, listener: Callable[[BaseException], Any]) -> None:
        """Register *listener* for errors raised by background work."""
        self._listeners.append(listener)

    def remove_error_listener(self, listener: Callable[[BaseException], Any]) -> None:
        self._listeners.remove(listener)

    def _report_error(self, exc: BaseException) -> None:
        logger.error("Background expiry error: %s", exc, exc_info=exc)
        for listener in list(self._listeners):
            try:
                outcome = listener(exc)
                if inspect.isawaitable(outcome):
                    self._spawn(outcome)
            except Exception:
                logger.exception("Error listener %r failed", listener)

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ── Expiring operations ─────────────────────────────────────────

    def _effective_ttl(self, ttl: int | None) -> int:
        return self._config.default_ttl_ms if ttl is None else ttl

    def _expiry_for(self, ttl: int) -> int:
        expiry = self._clock() + ttl
        try:
            self.index.encode_expiry(expiry)
        except (TypeError, ValueError) as exc:
            raise InvalidValueError(f"Invalid ttl {ttl!r}: {exc}") from exc
        return expiry

    async def _ttl_put(self, key: Key, value: Value, *, ttl: int | None = None) -> None:
        key = _check_key(key)
        if value is None:
            raise InvalidValueError(f"Value cannot be None (key {key!r})")
        value = to_bytes(value)
        ttl = self._effective_ttl(ttl)
        if ttl <= 0:
            await self._store.put(key, value)
            return
        expiry = self._expiry_for(ttl)

        # Both writes happen under the key's lock so a sweep cannot purge
        # between them.
        async with self.index.lock.hold([key]):
            outcomes = await asyncio.gather(
                self._store.put(key, value),
                self.index.set_expiry_locked([key], expiry),
                return_exceptions=True,
            )
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if not errors:
            return
        for err in errors:
            if not isinstance(err, Exception):
                raise err
        if len(errors) == len(outcomes):
            raise errors[0]
        data_failed = isinstance(outcomes[0], BaseException)
        logger.warning(
            "Partial write for %r: %s failed", key,
            "data" if data_failed else "expiry index",
        )
        raise PartialWriteError(
            f"{'data write' if data_failed else 'expiry index write'} "
            f"failed for key {key!r}"
        ) from errors[0]

    async def _ttl_delete(self, key: Key) -> None:
        key = _check_key(key)
        await self.index.clear_expiry([key])
        await self._store.delete(key)

    async def _ttl_batch(self, ops: Sequence[BatchOp], *, ttl: int | None = None) -> None:
        ops = [_check_op(op) for op in ops]
        ttl = self._effective_ttl(ttl)

        expiring = (
            [op.key for op in ops if op.kind is BatchOpKind.PUT]
            if ttl > 0 else []
        )
        cleared = [op.key for op in ops if op.kind is BatchOpKind.DEL]

        pending = []
        if expiring:
            pending.append(self.index.set_expiry(expiring, self._expiry_for(ttl)))
        if cleared:
            pending.append(self.index.clear_expiry(cleared))
        if pending:
            await asyncio.gather(*pending)

        await self._store.batch(ops)

    def _ttl_ttl(self, key: Key, delay_ms: int) -> asyncio.Task[None] | None:
        """Set or refresh the TTL of *key* in the background.

        Returns the background task, or None when *delay_ms* is not
        positive. Awaiting the task never raises: failures go to the error
        listeners.
        """
        key = _check_key(key)
        if delay_ms <= 0:
            return None
        return self._spawn(self._refresh(key, self._expiry_for(delay_ms)))

    async def _refresh(self, key: bytes, expiry_ms: int) -> None:
        try:
            await self.index.set_expiry([key], expiry_ms)
        except Exception as exc:
            self._report_error(exc)

    def _ttl_stop(self) -> None:
        self.sweeper.stop()
