"""SQLite-backed store for single-host deployments.

Every operation opens its own connection; atomic operations run inside
``BEGIN IMMEDIATE`` so concurrent writers, including other processes sharing
the database file, serialize on SQLite's write lock.
"""

from __future__ import annotations

import sqlite3
import time
from typing import Callable, Optional

import aiosqlite

from portier_broker.logging import get_logger
from portier_broker.storage.base import validate_ttl
from portier_broker.storage.errors import StoreError

logger = get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS store (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        expires_at REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_store_expires_at ON store (expires_at)",
)


class SqliteStore:
    def __init__(
        self,
        database_path: str,
        timeout: float = 30.0,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.database_path = database_path
        self.timeout = timeout
        self._clock = clock
        self._schema_ready = False

    def _connect(self):
        return aiosqlite.connect(self.database_path, timeout=self.timeout, isolation_level=None)

    async def initialize(self) -> None:
        """Create the schema if needed."""
        try:
            async with self._connect() as db:
                for statement in _SCHEMA:
                    await db.execute(statement)
        except (sqlite3.Error, OSError) as exc:
            logger.error("store_initialize_failed", backend="sqlite", error=str(exc))
            raise StoreError("sqlite store unavailable") from exc
        self._schema_ready = True

    async def _ensure_schema(self) -> None:
        if not self._schema_ready:
            await self.initialize()

    def _expiry(self, ttl: Optional[int], now: float) -> Optional[float]:
        ttl = validate_ttl(ttl)
        return None if ttl is None else now + ttl

    async def put(self, key: str, value: str, ttl: Optional[int]) -> None:
        await self._ensure_schema()
        now = self._clock()
        expires_at = self._expiry(ttl, now)
        try:
            async with self._connect() as db:
                await db.execute(
                    "INSERT INTO store (key, value, expires_at) VALUES (?, ?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                    "expires_at = excluded.expires_at",
                    (key, value, expires_at),
                )
                await db.execute(
                    "DELETE FROM store WHERE expires_at IS NOT NULL AND expires_at <= ?",
                    (now,),
                )
        except (sqlite3.Error, OSError) as exc:
            logger.error("store_put_failed", backend="sqlite", error=str(exc))
            raise StoreError("sqlite put failed") from exc

    async def get(self, key: str) -> Optional[str]:
        await self._ensure_schema()
        try:
            async with self._connect() as db:
                async with db.execute(
                    "SELECT value FROM store WHERE key = ? "
                    "AND (expires_at IS NULL OR expires_at > ?)",
                    (key, self._clock()),
                ) as cursor:
                    row = await cursor.fetchone()
        except (sqlite3.Error, OSError) as exc:
            logger.error("store_get_failed", backend="sqlite", error=str(exc))
            raise StoreError("sqlite get failed") from exc
        return row[0] if row else None

    async def take(self, key: str) -> Optional[str]:
        await self._ensure_schema()
        try:
            async with self._connect() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    async with db.execute(
                        "SELECT value, expires_at FROM store WHERE key = ?", (key,)
                    ) as cursor:
                        row = await cursor.fetchone()
                    if row is not None:
                        await db.execute("DELETE FROM store WHERE key = ?", (key,))
                    await db.execute("COMMIT")
                except BaseException:
                    if db.in_transaction:
                        await db.execute("ROLLBACK")
                    raise
        except (sqlite3.Error, OSError) as exc:
            logger.error("store_take_failed", backend="sqlite", error=str(exc))
            raise StoreError("sqlite take failed") from exc
        if row is None:
            return None
        value, expires_at = row
        if expires_at is not None and expires_at <= self._clock():
            return None
        return value

    async def increment_with_expiry(self, key: str, ttl: int) -> int:
        await self._ensure_schema()
        try:
            async with self._connect() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    now = self._clock()
                    async with db.execute(
                        "SELECT value, expires_at FROM store WHERE key = ?", (key,)
                    ) as cursor:
                        row = await cursor.fetchone()
                    if row is None or (row[1] is not None and row[1] <= now):
                        count = 1
                        await db.execute(
                            "INSERT OR REPLACE INTO store (key, value, expires_at) "
                            "VALUES (?, ?, ?)",
                            (key, "1", self._expiry(ttl, now)),
                        )
                    else:
                        count = int(row[0]) + 1
                        await db.execute(
                            "UPDATE store SET value = ? WHERE key = ?", (str(count), key)
                        )
                    await db.execute("COMMIT")
                except BaseException:
                    if db.in_transaction:
                        await db.execute("ROLLBACK")
                    raise
        except (sqlite3.Error, OSError) as exc:
            logger.error("store_increment_failed", backend="sqlite", error=str(exc))
            raise StoreError("sqlite increment failed") from exc
        return count

    async def delete(self, key: str) -> None:
        await self._ensure_schema()
        try:
            async with self._connect() as db:
                await db.execute("DELETE FROM store WHERE key = ?", (key,))
        except (sqlite3.Error, OSError) as exc:
            logger.error("store_delete_failed", backend="sqlite", error=str(exc))
            raise StoreError("sqlite delete failed") from exc

    async def ping(self) -> None:
        await self._ensure_schema()
        try:
            async with self._connect() as db:
                await db.execute("SELECT 1")
        except (sqlite3.Error, OSError) as exc:
            raise StoreError("sqlite store unavailable") from exc

    async def close(self) -> None:
        return None
