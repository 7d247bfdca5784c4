"""Durable key/value cache with per-entry expiry."""
from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional

import orjson
import structlog

from kdp_pipeline.storage.database import Database

LOGGER = structlog.get_logger(__name__)


class CacheStore:
    """Memoizes extraction results in the ``cache_entries`` table.

    Expiry is lazy: ``get`` treats an expired entry as a miss and leaves it
    in place; ``purge_expired`` reclaims the rows.
    """

    def __init__(self, database: Database, *, clock: Callable[[], float] = time.time) -> None:
        self._db = database
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss or an expired entry."""
        return await asyncio.to_thread(self._get, key)

    async def put(self, key: str, value: Any, ttl: float) -> None:
        """Store the value under the key, replacing any existing entry."""
        await asyncio.to_thread(self._put, key, value, ttl)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete, key)

    async def purge_expired(self) -> int:
        """Delete expired entries, returning how many were removed."""
        removed = await asyncio.to_thread(self._purge_expired)
        if removed:
            LOGGER.info("cache_purged", removed=removed)
        return removed

    def _get(self, key: str) -> Optional[Any]:
        with self._db.connect() as connection:
            row = connection.execute(
                "SELECT value_json, expires_at FROM cache_entries WHERE cache_key = ?",
                (key,),
            ).fetchone()
        if row is None or self._clock() >= row["expires_at"]:
            return None
        return orjson.loads(row["value_json"])

    def _put(self, key: str, value: Any, ttl: float) -> None:
        now = self._clock()
        with self._db.connect() as connection:
            connection.execute(
                """
                INSERT INTO cache_entries (cache_key, value_json, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    value_json = excluded.value_json,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
                """,
                (key, orjson.dumps(value).decode(), now, now + ttl),
            )

    def _delete(self, key: str) -> bool:
        with self._db.connect() as connection:
            cursor = connection.execute("DELETE FROM cache_entries WHERE cache_key = ?", (key,))
            return cursor.rowcount > 0

    def _purge_expired(self) -> int:
        with self._db.connect() as connection:
            cursor = connection.execute(
                "DELETE FROM cache_entries WHERE expires_at <= ?",
                (self._clock(),),
            )
            return cursor.rowcount
