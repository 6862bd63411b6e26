"""Tests for the model artifact cache."""

from __future__ import annotations

import asyncio
import threading

import pytest
import requests

from content_index.cache import model_cache as cache_module
from content_index.cache.model_cache import CacheEntry, ModelArtifactCache
from content_index.core.errors import ModelFetchError
from content_index.utils.time import MS_PER_DAY


class FakeResponse:
    def __init__(self, body: bytes, status: int = 200, declared: int | None = None) -> None:
        self.body = body
        self.status = status
        size = len(body) if declared is None else declared
        self.headers = {"Content-Length": str(size)}

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc) -> None:
        return None

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise requests.HTTPError(f"HTTP {self.status}")

    def iter_content(self, chunk_size: int):
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start : start + chunk_size]


class FakeSession:
    """Serves queued responses per URL and records every request."""

    def __init__(self, responses: dict[str, list[FakeResponse]]) -> None:
        self.responses = responses
        self.calls: list[str] = []
        self.gate: threading.Event | None = None

    def get(self, url: str, timeout: float, stream: bool) -> FakeResponse:
        self.calls.append(url)
        if self.gate is not None:
            self.gate.wait(5)
        queue = self.responses[url]
        return queue.pop(0) if len(queue) > 1 else queue[0]


class Clock:
    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def make_cache(database, clock: Clock, http: FakeSession | None = None, max_bytes: int = 1000) -> ModelArtifactCache:
    return ModelArtifactCache(
        database,
        max_bytes=max_bytes,
        retention_days=30,
        download_retries=3,
        http=http or FakeSession({}),
        clock=clock,
    )


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cache_module, "DOWNLOAD_BACKOFF_SECONDS", 0)


@pytest.mark.asyncio
async def test_put_get_and_expiry(database) -> None:
    clock = Clock()
    cache = make_cache(database, clock)
    await cache.put("https://x/model.onnx", b"abc")
    assert await cache.get("https://x/model.onnx") == b"abc"
    assert await cache.is_cached("https://x/model.onnx")

    clock.now += 31 * MS_PER_DAY
    assert await cache.get("https://x/model.onnx") is None
    stats = await cache.stats()
    assert stats.entry_count == 0


@pytest.mark.asyncio
async def test_corrupt_metadata_is_a_miss(database) -> None:
    cache = make_cache(database, Clock())
    await cache.put("https://x/tok.json", b"data")
    database.execute("UPDATE model_cache_meta SET meta = ? WHERE url = ?", ["{not json", "https://x/tok.json"])
    assert await cache.get("https://x/tok.json") is None
    assert database.query_one("SELECT url FROM model_cache WHERE url = ?", ["https://x/tok.json"]) is None


@pytest.mark.asyncio
async def test_reclaim_drops_expired_then_oldest(database) -> None:
    clock = Clock()
    cache = make_cache(database, clock, max_bytes=100)
    await cache.put("old", b"a" * 40)
    clock.now += 10
    await cache.put("mid", b"b" * 40)
    clock.now += 10
    await cache.put("new", b"c" * 50)

    stats = await cache.stats()
    assert stats.total_size <= 100
    assert [entry["url"] for entry in stats.entries] == ["new", "mid"]
    assert await cache.get("old") is None


@pytest.mark.asyncio
async def test_stats_newest_first_with_age(database) -> None:
    clock = Clock()
    cache = make_cache(database, clock)
    await cache.put("first", b"1")
    clock.now += 500
    await cache.put("second", b"22")
    stats = (await cache.stats()).to_dict()
    assert stats["entry_count"] == 2
    assert stats["total_size"] == 3
    first = stats["entries"][1]
    assert first["url"] == "first"
    assert first["age_ms"] == 500
    assert first["version"] == cache_module.CACHE_VERSION
    assert first["expired"] is False


@pytest.mark.asyncio
async def test_cleanup_expired_and_has_any_valid(database) -> None:
    clock = Clock()
    cache = make_cache(database, clock)
    await cache.put("a", b"1")
    assert await cache.has_any_valid_cache()
    clock.now += 31 * MS_PER_DAY
    assert not await cache.has_any_valid_cache()
    assert await cache.cleanup_expired() == 1
    await cache.put("b", b"2")
    await cache.clear_all()
    assert (await cache.stats()).entry_count == 0


@pytest.mark.asyncio
async def test_fetch_downloads_once_then_serves_cache(database) -> None:
    http = FakeSession({"u": [FakeResponse(b"payload")]})
    cache = make_cache(database, Clock(), http=http)
    progress: list[tuple[int, int | None]] = []
    assert await cache.fetch("u", progress=lambda done, total: progress.append((done, total))) == b"payload"
    assert await cache.fetch("u") == b"payload"
    assert http.calls == ["u"]
    assert progress[-1] == (7, 7)


@pytest.mark.asyncio
async def test_fetch_retries_then_succeeds(database) -> None:
    http = FakeSession({"u": [FakeResponse(b"", status=503), FakeResponse(b"ok")]})
    cache = make_cache(database, Clock(), http=http)
    assert await cache.fetch("u") == b"ok"
    assert http.calls == ["u", "u"]


@pytest.mark.asyncio
async def test_fetch_failure_leaves_no_entry(database) -> None:
    http = FakeSession({"u": [FakeResponse(b"half", declared=10)]})
    cache = make_cache(database, Clock(), http=http)
    with pytest.raises(ModelFetchError):
        await cache.fetch("u")
    assert len(http.calls) == 3
    assert await cache.get("u") is None
    assert (await cache.stats()).entry_count == 0


@pytest.mark.asyncio
async def test_concurrent_fetches_share_download(database) -> None:
    http = FakeSession({"u": [FakeResponse(b"shared")]})
    http.gate = threading.Event()
    cache = make_cache(database, Clock(), http=http)
    first = asyncio.create_task(cache.fetch("u"))
    second = asyncio.create_task(cache.fetch("u"))
    await asyncio.sleep(0.05)
    http.gate.set()
    assert await asyncio.gather(first, second) == [b"shared", b"shared"]
    assert http.calls == ["u"]


def test_entry_json_round_trip() -> None:
    entry = CacheEntry(url="u", size_bytes=5, created_at=42)
    raw = entry.to_json()
    assert '"sizeBytes":5' in raw
    assert CacheEntry.from_json(raw) == entry
