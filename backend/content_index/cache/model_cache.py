"""Durable cache for downloaded model artifacts."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable

import orjson
import requests

from content_index.core.errors import ModelFetchError
from content_index.core.logging import get_logger
from content_index.core.metrics import MODEL_CACHE_BYTES, MODEL_DOWNLOADS
from content_index.db.sqlite import SQLiteDatabase
from content_index.utils.time import days_to_ms, now_ms

logger = get_logger(__name__)

CACHE_VERSION = "onnx-model-cache-v1"
DEFAULT_MAX_BYTES = 500 * 1024 * 1024
DEFAULT_RETENTION_DAYS = 30
DOWNLOAD_CHUNK_BYTES = 1024 * 1024
DOWNLOAD_BACKOFF_SECONDS = 0.5

ProgressCallback = Callable[[int, int | None], None]


@dataclass(slots=True)
class CacheEntry:
    """Metadata for one cached artifact, keyed by URL."""

    url: str
    size_bytes: int
    created_at: int
    version: str = CACHE_VERSION

    def to_json(self) -> str:
        payload = {
            "timestamp": self.created_at,
            "url": self.url,
            "sizeBytes": self.size_bytes,
            "version": self.version,
        }
        return orjson.dumps(payload).decode("utf-8")

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        data = orjson.loads(raw)
        return cls(
            url=str(data["url"]),
            size_bytes=int(data["sizeBytes"]),
            created_at=int(data["timestamp"]),
            version=str(data.get("version", CACHE_VERSION)),
        )


@dataclass(slots=True)
class _StoredArtifact:
    url: str
    stored_bytes: int
    entry: CacheEntry | None
    expired: bool


@dataclass(slots=True)
class CacheStats:
    total_size: int = 0
    entry_count: int = 0
    entries: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_size": self.total_size,
            "entry_count": self.entry_count,
            "entries": list(self.entries),
        }


class ModelArtifactCache:
    """URL-keyed artifact cache with expiry and size-bounded eviction.

    Artifact bytes and their metadata are stored in separate rows. An artifact
    whose metadata is missing, unparseable or older than the retention window
    counts as expired: ``get`` purges it and reports a miss.
    """

    def __init__(
        self,
        database: SQLiteDatabase,
        max_bytes: int = DEFAULT_MAX_BYTES,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        download_timeout: float = 120.0,
        download_retries: int = 3,
        http: requests.Session | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.db = database
        self.max_bytes = max_bytes
        self.retention_ms = days_to_ms(retention_days)
        self.download_timeout = download_timeout
        self.download_retries = max(1, download_retries)
        self.http = http or requests.Session()
        self._clock = clock
        self._inflight: dict[str, asyncio.Future[bytes]] = {}

    async def get(self, url: str) -> bytes | None:
        artifact = await asyncio.to_thread(self._describe, url)
        if artifact is None:
            return None
        if artifact.expired:
            logger.info("Purging stale model cache entry %s", url)
            await self.delete(url)
            return None
        row = await asyncio.to_thread(
            self.db.query_one, "SELECT data FROM model_cache WHERE url = ?", [url]
        )
        return bytes(row["data"]) if row is not None else None

    async def put(self, url: str, data: bytes) -> None:
        await self.reclaim(len(data))
        entry = CacheEntry(url=url, size_bytes=len(data), created_at=self._clock())
        await asyncio.to_thread(self._write, entry, data)
        logger.info("Cached model artifact %s (%.2f MB)", url, len(data) / 1024 / 1024)
        await self._refresh_gauge()

    async def reclaim(self, new_size: int = 0) -> int:
        """Free space for ``new_size`` bytes; returns the number of entries removed."""
        artifacts = await asyncio.to_thread(self._collect)
        total = sum(item.stored_bytes for item in artifacts)
        if total + new_size <= self.max_bytes:
            return 0

        logger.info(
            "Model cache over budget, reclaiming",
            extra={"ctx_total_bytes": total, "ctx_new_bytes": new_size, "ctx_max_bytes": self.max_bytes},
        )
        removed = 0
        for item in [a for a in artifacts if a.expired]:
            await self.delete(item.url)
            total -= item.stored_bytes
            removed += 1

        if total + new_size > self.max_bytes:
            valid = sorted(
                (a for a in artifacts if not a.expired and a.entry is not None),
                key=lambda a: a.entry.created_at,
            )
            for item in valid:
                if total + new_size <= self.max_bytes:
                    break
                await self.delete(item.url)
                total -= item.stored_bytes
                removed += 1

        if total + new_size > self.max_bytes:
            logger.warning(
                "Model cache cannot fit new artifact within budget",
                extra={"ctx_total_bytes": total, "ctx_new_bytes": new_size},
            )
        return removed

    async def stats(self) -> CacheStats:
        artifacts = await asyncio.to_thread(self._collect)
        now = self._clock()
        stats = CacheStats(total_size=sum(a.stored_bytes for a in artifacts), entry_count=len(artifacts))
        ordered = sorted(
            artifacts,
            key=lambda a: a.entry.created_at if a.entry is not None else -1,
            reverse=True,
        )
        for item in ordered:
            stats.entries.append(
                {
                    "url": item.url,
                    "size_bytes": item.stored_bytes,
                    "age_ms": now - item.entry.created_at if item.entry is not None else None,
                    "expired": item.expired,
                    "version": item.entry.version if item.entry is not None else None,
                }
            )
        return stats

    async def is_cached(self, url: str) -> bool:
        artifact = await asyncio.to_thread(self._describe, url)
        return artifact is not None and not artifact.expired

    async def has_any_valid_cache(self) -> bool:
        artifacts = await asyncio.to_thread(self._collect)
        return any(not item.expired for item in artifacts)

    async def cleanup_expired(self) -> int:
        artifacts = await asyncio.to_thread(self._collect)
        removed = 0
        for item in artifacts:
            if item.expired:
                await self.delete(item.url)
                removed += 1
        if removed:
            logger.info("Removed %s expired model cache entries", removed)
        return removed

    async def delete(self, url: str) -> None:
        await asyncio.to_thread(self._delete, url)
        await self._refresh_gauge()

    async def clear_all(self) -> None:
        await asyncio.to_thread(self._clear)
        await self._refresh_gauge()
        logger.info("Cleared model cache")

    async def fetch(self, url: str, progress: ProgressCallback | None = None) -> bytes:
        """Return cached bytes for ``url``, downloading and caching on a miss.

        Concurrent fetches of the same URL share one download.
        """
        cached = await self.get(url)
        if cached is not None:
            return cached
        pending = self._inflight.get(url)
        if pending is not None:
            return await asyncio.shield(pending)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[bytes] = loop.create_future()
        self._inflight[url] = future
        try:
            data = await self._download(url, progress)
            await self.put(url, data)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            future.exception()
            raise
        else:
            future.set_result(data)
            return data
        finally:
            self._inflight.pop(url, None)

    # Internal helpers -------------------------------------------------

    async def _download(self, url: str, progress: ProgressCallback | None) -> bytes:
        last_error: Exception | None = None
        for attempt in range(1, self.download_retries + 1):
            try:
                data = await asyncio.to_thread(self._download_once, url, progress)
                MODEL_DOWNLOADS.labels(outcome="success").inc()
                return data
            except requests.RequestException as exc:
                last_error = exc
                logger.warning("Download of %s failed (attempt %s/%s): %s", url, attempt, self.download_retries, exc)
                await self.delete(url)
                if attempt < self.download_retries:
                    await asyncio.sleep(DOWNLOAD_BACKOFF_SECONDS * attempt)
        MODEL_DOWNLOADS.labels(outcome="failure").inc()
        raise ModelFetchError(f"Failed to fetch model from {url}: {last_error}") from last_error

    def _download_once(self, url: str, progress: ProgressCallback | None) -> bytes:
        with self.http.get(url, timeout=self.download_timeout, stream=True) as response:
            response.raise_for_status()
            total = response.headers.get("Content-Length")
            expected = int(total) if total and total.isdigit() else None
            buffer = bytearray()
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                if not chunk:
                    continue
                buffer.extend(chunk)
                if progress is not None:
                    progress(len(buffer), expected)
        if expected is not None and len(buffer) != expected:
            raise requests.RequestException(f"Truncated download: {len(buffer)} of {expected} bytes")
        return bytes(buffer)

    def _is_expired(self, entry: CacheEntry | None) -> bool:
        if entry is None:
            return True
        return self._clock() - entry.created_at > self.retention_ms

    def _parse(self, url: str, raw: str | None) -> CacheEntry | None:
        if raw is None:
            return None
        try:
            return CacheEntry.from_json(raw)
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("Corrupt model cache metadata for %s", url)
            return None

    def _describe(self, url: str) -> _StoredArtifact | None:
        row = self.db.query_one(
            "SELECT length(c.data) AS size, m.meta AS meta FROM model_cache c "
            "LEFT JOIN model_cache_meta m ON m.url = c.url WHERE c.url = ?",
            [url],
        )
        if row is None:
            return None
        entry = self._parse(url, row["meta"])
        return _StoredArtifact(url=url, stored_bytes=row["size"], entry=entry, expired=self._is_expired(entry))

    def _collect(self) -> list[_StoredArtifact]:
        rows = self.db.query(
            "SELECT c.url AS url, length(c.data) AS size, m.meta AS meta FROM model_cache c "
            "LEFT JOIN model_cache_meta m ON m.url = c.url"
        )
        artifacts = []
        for row in rows:
            entry = self._parse(row["url"], row["meta"])
            artifacts.append(
                _StoredArtifact(url=row["url"], stored_bytes=row["size"], entry=entry, expired=self._is_expired(entry))
            )
        return artifacts

    def _write(self, entry: CacheEntry, data: bytes) -> None:
        with self.db.transaction() as cursor:
            cursor.execute(
                "INSERT OR REPLACE INTO model_cache (url, data) VALUES (?, ?)",
                [entry.url, data],
            )
            cursor.execute(
                "INSERT OR REPLACE INTO model_cache_meta (url, meta) VALUES (?, ?)",
                [entry.url, entry.to_json()],
            )

    def _delete(self, url: str) -> None:
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM model_cache WHERE url = ?", [url])
            cursor.execute("DELETE FROM model_cache_meta WHERE url = ?", [url])

    def _clear(self) -> None:
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM model_cache")
            cursor.execute("DELETE FROM model_cache_meta")

    async def _refresh_gauge(self) -> None:
        row = await asyncio.to_thread(
            self.db.query_one, "SELECT COALESCE(SUM(length(data)), 0) AS total FROM model_cache"
        )
        MODEL_CACHE_BYTES.set(row["total"] if row is not None else 0)


__all__ = ["ModelArtifactCache", "CacheEntry", "CacheStats", "CACHE_VERSION"]
