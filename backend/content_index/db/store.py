"""Namespaced blob storage on top of SQLite."""

from __future__ import annotations

import asyncio
import sqlite3

from content_index.core.errors import TransientIOError
from content_index.core.logging import get_logger
from content_index.db.sqlite import SQLiteDatabase
from content_index.utils.time import now_ms

logger = get_logger(__name__)

WRITE_ATTEMPTS = 3
WRITE_BACKOFF_SECONDS = 0.05


class BlobStore:
    """Durable key/value store for graph, mapping and preference blobs."""

    def __init__(self, database: SQLiteDatabase) -> None:
        self.db = database

    async def get(self, namespace: str, key: str) -> bytes | None:
        row = await asyncio.to_thread(
            self.db.query_one,
            "SELECT value FROM blobs WHERE namespace = ? AND key = ?",
            [namespace, key],
        )
        return bytes(row["value"]) if row is not None else None

    async def put(self, namespace: str, key: str, value: bytes) -> None:
        await self._write(
            "INSERT INTO blobs (namespace, key, value, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(namespace, key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            [namespace, key, value, now_ms()],
        )

    async def delete(self, namespace: str, key: str) -> bool:
        affected = await self._write(
            "DELETE FROM blobs WHERE namespace = ? AND key = ?",
            [namespace, key],
        )
        return affected > 0

    async def delete_namespace(self, namespace: str) -> int:
        return await self._write("DELETE FROM blobs WHERE namespace = ?", [namespace])

    async def keys(self, namespace: str) -> list[str]:
        rows = await asyncio.to_thread(
            self.db.query,
            "SELECT key FROM blobs WHERE namespace = ? ORDER BY key",
            [namespace],
        )
        return [row["key"] for row in rows]

    async def _write(self, sql: str, params: list[object]) -> int:
        for attempt in range(1, WRITE_ATTEMPTS + 1):
            try:
                return await asyncio.to_thread(self.db.execute, sql, params)
            except sqlite3.OperationalError as exc:
                if attempt == WRITE_ATTEMPTS:
                    raise TransientIOError(f"Blob store write failed: {exc}") from exc
                logger.warning("Blob store write failed (attempt %s): %s", attempt, exc)
                await asyncio.sleep(WRITE_BACKOFF_SECONDS * attempt)
        raise AssertionError("unreachable")


__all__ = ["BlobStore"]
