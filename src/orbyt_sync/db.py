"""asyncpg pool lifecycle for the sync service."""

from __future__ import annotations

import logging
from urllib.parse import urlsplit

import asyncpg

from orbyt_sync.config import DatabaseSettings
from orbyt_sync.storage.schema import ensure_schema

logger = logging.getLogger(__name__)


def describe_dsn(dsn: str) -> str:
    """``host:port/database`` for log lines; credentials never appear."""
    parts = urlsplit(dsn)
    return f"{parts.hostname or 'localhost'}:{parts.port or 5432}{parts.path or '/'}"


class Database:
    """Owns the single asyncpg pool shared by every repository.

    Usable as an async context manager::

        async with Database(settings.database) as pool:
            ...
    """

    def __init__(self, settings: DatabaseSettings) -> None:
        self._settings = settings
        self._pool: asyncpg.Pool | None = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool is not open; call connect() first")
        return self._pool

    async def connect(self, *, bootstrap: bool = False) -> asyncpg.Pool:
        """Open the pool; with *bootstrap* also create any missing tables."""
        if self._pool is not None:
            return self._pool
        self._pool = await asyncpg.create_pool(
            dsn=self._settings.url,
            min_size=self._settings.min_pool_size,
            max_size=self._settings.max_pool_size,
        )
        logger.info("Opened database pool to %s", describe_dsn(self._settings.url))
        if bootstrap:
            await ensure_schema(self._pool)
        return self._pool

    async def close(self) -> None:
        if self._pool is None:
            return
        pool, self._pool = self._pool, None
        await pool.close()
        logger.info("Closed database pool to %s", describe_dsn(self._settings.url))

    async def __aenter__(self) -> asyncpg.Pool:
        return await self.connect()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
