from __future__ import annotations

import re
from pathlib import Path

import aiosqlite
from lapse_core.errors import ConfigError

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def check_table_name(name: str) -> str:
    """Reject table names that would need quoting inside SQL."""
    if not _IDENTIFIER.match(name):
        raise ConfigError(f"Invalid SQLite table name: {name!r}")
    return name


async def get_connection(db_path: str) -> aiosqlite.Connection:
    """Open a WAL-mode SQLite connection, creating the directory if needed.

    ``":memory:"`` opens a private in-memory database.
    """
    if db_path != ":memory:":
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        db_path = str(path)
    conn = await aiosqlite.connect(db_path)
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA busy_timeout=5000")
    await conn.execute("PRAGMA synchronous=NORMAL")
    conn.row_factory = aiosqlite.Row
    return conn
