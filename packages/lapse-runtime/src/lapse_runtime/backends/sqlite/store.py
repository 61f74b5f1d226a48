from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from lapse_core.errors import StoreClosedError
from lapse_core.logging import get_logger
from lapse_core.types import BatchOpKind

from lapse_runtime.backends.sqlite._db import check_table_name, get_connection

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    import aiosqlite
    from lapse_core.types import BatchOp

logger = get_logger("backend.sqlite")

_CREATE_KV = """
CREATE TABLE IF NOT EXISTS {table} (
    key BLOB PRIMARY KEY,
    value BLOB NOT NULL
) WITHOUT ROWID;
"""


class SQLiteStore:
    """T1 ordered store: one SQLite table keyed by BLOB.

    SQLite compares BLOBs with ``memcmp``, so ``ORDER BY key`` is byte
    order. Statements share one connection; an asyncio lock keeps a batch's
    statements and its commit from interleaving with other calls.
    """

    def __init__(self, conn: aiosqlite.Connection, table: str = "kv") -> None:
        self._conn = conn
        self._table = check_table_name(table)
        self._lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def create(cls, db_path: str, table: str = "kv") -> SQLiteStore:
        conn = await get_connection(db_path)
        await conn.executescript(_CREATE_KV.format(table=check_table_name(table)))
        await conn.commit()
        logger.info("Opened SQLite store %s (table %s)", db_path, table)
        return cls(conn, table)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(table={self._table!r})"

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("SQLiteStore is closed")

    async def _apply(self, kind: BatchOpKind, key: bytes, value: bytes | None) -> None:
        if kind is BatchOpKind.PUT:
            await self._conn.execute(
                f"""INSERT INTO {self._table} (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
                (key, value),
            )
        else:
            await self._conn.execute(
                f"DELETE FROM {self._table} WHERE key = ?", (key,)
            )

    async def _write(self, ops: list[tuple[BatchOpKind, bytes, bytes | None]]) -> None:
        self._check_open()
        async with self._lock:
            try:
                for kind, key, value in ops:
                    await self._apply(kind, key, value)
                await self._conn.commit()
            except Exception:
                await self._conn.rollback()
                raise

    async def get(self, key: bytes) -> bytes | None:
        self._check_open()
        async with self._lock, self._conn.execute(
            f"SELECT value FROM {self._table} WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        return bytes(row[0]) if row else None

    async def put(self, key: bytes, value: bytes) -> None:
        await self._write([(BatchOpKind.PUT, key, value)])

    async def delete(self, key: bytes) -> None:
        await self._write([(BatchOpKind.DEL, key, None)])

    async def batch(self, ops: Sequence[BatchOp]) -> None:
        for op in ops:
            if op.kind is BatchOpKind.PUT and op.value is None:
                raise ValueError(f"batch put without value for {op.key!r}")
        if ops:
            await self._write([(op.kind, op.key, op.value) for op in ops])

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
        clauses: list[str] = []
        params: list[object] = []
        for op, bound in ((">", gt), (">=", gte), ("<", lt), ("<=", lte)):
            if bound is not None:
                clauses.append(f"key {op} ?")
                params.append(bound)
        sql = f"SELECT key, value FROM {self._table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY key " + ("DESC" if reverse else "ASC")
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        async with self._lock, self._conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        for row in rows:
            yield bytes(row[0]), bytes(row[1])

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        async with self._lock:
            await self._conn.close()
