from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING

from lapse_core.logging import get_logger
from lapse_core.types import BatchOp, SweepResult, SweepState

if TYPE_CHECKING:
    from collections.abc import Callable

    from lapse_runtime.index import ExpiryIndex
    from lapse_runtime.protocols.store import OrderedStore

logger = get_logger("sweeper")


def now_ms() -> int:
    return time.time_ns() // 1_000_000


class Sweeper:
    """Periodic removal of expired keys.

    A timer task ticks every ``check_frequency_ms``. A tick in the IDLE state
    starts a scan task and moves to SCANNING; ticks arriving while a scan is
    in flight are dropped. ``stop()`` during a scan moves to STOP_PENDING and
    the timer is cancelled once the scan's deletes complete.

    State machine::

        IDLE --tick--> SCANNING --done--> IDLE
        SCANNING --stop()--> STOP_PENDING --done--> STOPPED
        IDLE --stop()--> STOPPED
    """

    def __init__(
        self,
        index: ExpiryIndex,
        data_store: OrderedStore,
        *,
        check_frequency_ms: int = 10_000,
        clock: Callable[[], int] = now_ms,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        self._index = index
        self._data = data_store
        self._interval = check_frequency_ms / 1000
        self._clock = clock
        self._on_error = on_error
        self._state = SweepState.IDLE
        self._timer: asyncio.Task[None] | None = None
        self._scan: asyncio.Task[SweepResult] | None = None
        self._stopped = asyncio.Event()
        self.last_result: SweepResult | None = None

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(state={self._state.value}, "
            f"interval={self._interval}s)"
        )

    @property
    def state(self) -> SweepState:
        return self._state

    @property
    def running(self) -> bool:
        """Whether the timer task is alive."""
        return self._timer is not None and not self._timer.done()

    # ── Control ─────────────────────────────────────────────────────

    def start(self) -> None:
        """Spawn the background timer task."""
        if self._state is SweepState.STOP_PENDING:
            self._state = SweepState.SCANNING
            return
        if self.running:
            logger.warning("Sweeper already running")
            return
        if self._state is not SweepState.SCANNING:
            self._state = SweepState.IDLE
        self._stopped.clear()
        self._timer = asyncio.get_running_loop().create_task(
            self._run(), name="lapse-sweeper"
        )
        logger.debug("Sweeper started (every %.3fs)", self._interval)

    def stop(self) -> None:
        """Request shutdown; deferred until an in-flight scan completes."""
        if self._state is SweepState.STOPPED:
            return
        if self._state in (SweepState.SCANNING, SweepState.STOP_PENDING):
            self._state = SweepState.STOP_PENDING
            logger.debug("Stop requested during scan, deferring")
            return
        self._halt()

    async def wait_stopped(self) -> None:
        """Wait until the sweeper reaches STOPPED and its timer has exited."""
        await self._stopped.wait()
        if self._timer is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer
            self._timer = None

    def tick(self) -> asyncio.Task[SweepResult] | None:
        """Start a scan unless one is already running."""
        if self._state is not SweepState.IDLE:
            logger.debug(
                "Dropping tick, sweeper is %s", self._state.value,
                extra={"state": self._state.value},
            )
            return None
        self._state = SweepState.SCANNING
        self._scan = asyncio.get_running_loop().create_task(
            self._sweep_and_settle(), name="lapse-sweep"
        )
        return self._scan

    async def sweep(self) -> SweepResult:
        """Run a sweep now, or join the one already in flight."""
        if self._state is SweepState.STOPPED:
            raise RuntimeError("Sweeper is stopped")
        task = self.tick() or self._scan
        if task is None:
            raise RuntimeError(f"Sweeper has no scan to join ({self._state.value})")
        return await asyncio.shield(task)

    # ── Internals ───────────────────────────────────────────────────

    def _halt(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._state = SweepState.STOPPED
        self._stopped.set()
        logger.debug("Sweeper stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.tick()

    async def _sweep_and_settle(self) -> SweepResult:
        try:
            result = await self._sweep_once()
            self.last_result = result
            return result
        finally:
            self._scan = None
            if self._state is SweepState.STOP_PENDING:
                self._halt()
            else:
                self._state = SweepState.IDLE

    async def _sweep_once(self) -> SweepResult:
        now = self._clock()
        result = SweepResult(started_at_ms=now)
        try:
            due = [entry async for entry in self._index.iter_due(now)]
            result.due = len(due)
            if due:
                await self._purge(due, result)
        except Exception as exc:
            result.error = exc
            self._report(exc)
            return result

        if result.purged:
            logger.info(
                "Expired %d key(s)", len(result.purged),
                extra={"due": result.due, "purged": len(result.purged), "stale": result.stale},
            )
        else:
            logger.debug("Sweep found %d due entries", result.due)
        return result

    async def _purge(self, due: list[tuple[bytes, bytes]], result: SweepResult) -> None:
        """Delete due keys whose marker still points at the scanned entry.

        A key renewed or cleared after the scan read its schedule entry keeps
        its data; only the stale schedule entry is removed.
        """
        index = self._index
        keys = list(dict.fromkeys(key for _, key in due))
        async with index.lock.hold(keys):
            expiries = await asyncio.gather(*(index.get_expiry(key) for key in keys))
            current = dict(zip(keys, expiries))

            meta_ops: list[BatchOp] = []
            data_ops: list[BatchOp] = []
            for schedule_key, key in due:
                meta_ops.append(BatchOp.delete(schedule_key))
                expiry = current.get(key)
                if expiry is None or index.schedule_key(expiry, key) != schedule_key:
                    result.stale += 1
                    continue
                meta_ops.append(BatchOp.delete(index.marker_key(key)))
                data_ops.append(BatchOp.delete(key))
                result.purged.append(key)

            if index.store is self._data:
                await self._data.batch(meta_ops + data_ops)
            else:
                # Separate stores: a failure between these two batches
                # leaves orphans behind.
                await index.store.batch(meta_ops)
                if data_ops:
                    await self._data.batch(data_ops)

    def _report(self, exc: BaseException) -> None:
        if self._on_error is not None:
            self._on_error(exc)
        else:
            logger.error("Sweep failed: %s", exc, exc_info=exc)
