from __future__ import annotations

from typing import TYPE_CHECKING

from lapse_core.config import LapseConfig
from lapse_core.errors import ConfigError
from lapse_core.logging import get_logger, setup_from_config

from lapse_runtime.backends.sublevel import sublevel
from lapse_runtime.ttl_store import TTLStore

if TYPE_CHECKING:
    from pathlib import Path

    from lapse_runtime.protocols.store import OrderedStore

logger = get_logger("builder")


class StoreBuilder:
    """Build a started TTLStore from configuration.

    Usage:
        config = LapseConfig.from_toml("lapse.toml")
        store = await StoreBuilder(config).build()
    """

    def __init__(self, config: LapseConfig) -> None:
        self._config = config

    async def build(self) -> TTLStore:
        backend = self._config.backend
        logger.info("Building TTL store with %s backend", backend.tier)

        store = await self.open_backend()
        sub = None
        if backend.metadata_sublevel:
            sub = sublevel(
                store, backend.metadata_sublevel, self._config.ttl.separator,
            )
        return await TTLStore.create(store, self._config.ttl, sub=sub)

    async def open_backend(self) -> OrderedStore:
        tier = self._config.backend.tier
        if tier == "memory":
            return self._build_memory()
        elif tier == "sqlite":
            return await self._build_sqlite()
        elif tier == "redis":
            return await self._build_redis()
        else:
            raise ConfigError(f"Unknown backend tier: {tier!r}")

    def _build_memory(self) -> OrderedStore:
        from lapse_runtime.backends.memory import MemoryStore
        return MemoryStore()

    async def _build_sqlite(self) -> OrderedStore:
        from lapse_runtime.backends.sqlite import SQLiteStore
        backend = self._config.backend
        return await SQLiteStore.create(
            backend.sqlite_path, table=backend.sqlite_table,
        )

    async def _build_redis(self) -> OrderedStore:
        from lapse_runtime.backends.redis import RedisStore
        backend = self._config.backend
        return await RedisStore.create(
            backend.redis_url, prefix=backend.redis_prefix,
        )


async def open_store(
    config: LapseConfig | None = None,
    *,
    project_dir: Path | str | None = None,
) -> TTLStore:
    """Load configuration (unless given), set up logging and build a store."""
    if config is None:
        config = LapseConfig.load(project_dir)
    setup_from_config(config.logging)
    return await StoreBuilder(config).build()
