"""Tests for the persistent vector index."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from content_index.core.errors import TransientIOError, VectorValidationError
from content_index.ingest.types import TextChunk
from content_index.retrieval.vector_index import (
    GRAPH_NAMESPACE,
    MAPPING_NAMESPACE,
    IndexStatus,
    VectorIndex,
    VectorIndexConfig,
)
from content_index.utils.time import MS_PER_DAY

DIM = 4


class Clock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        self.now += 1
        return self.now


def unit(*values: float) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float32)
    return vector / np.linalg.norm(vector)


def chunk(index: int, text: str = "text") -> TextChunk:
    return TextChunk(index=index, text=text, source_label="Title")


def make_index(store, tmp_path: Path, clock: Clock | None = None, **overrides) -> VectorIndex:
    values = {"dimension": DIM, "data_dir": tmp_path / "data", "max_elements": 1000}
    values.update(overrides)
    return VectorIndex(store, VectorIndexConfig(**values), clock=clock or Clock())


@pytest.mark.asyncio
async def test_rejects_bad_vectors(store, tmp_path: Path) -> None:
    index = make_index(store, tmp_path)
    with pytest.raises(VectorValidationError):
        await index.add_document("1", "https://a", "A", chunk(0), [1.0, 0.0, 0.0])
    with pytest.raises(VectorValidationError):
        await index.add_document("1", "https://a", "A", chunk(0), [1.0, float("nan"), 0.0, 0.0])
    with pytest.raises(VectorValidationError):
        await index.search([1.0, 0.0], top_k=3)
    assert index.document_count == 0


@pytest.mark.asyncio
async def test_search_orders_by_similarity(store, tmp_path: Path) -> None:
    index = make_index(store, tmp_path)
    await index.add_document("1", "https://a", "A", chunk(0, "x"), unit(1, 0, 0, 0))
    await index.add_document("1", "https://a", "A", chunk(1, "xy"), unit(1, 1, 0, 0))
    await index.add_document("2", "https://b", "B", chunk(0, "z"), unit(0, 0, 1, 0))

    results = await index.search(unit(1, 0, 0, 0), top_k=2)
    assert [result.document.chunk.text for result in results] == ["x", "xy"]
    assert results[0].similarity == pytest.approx(1.0, abs=1e-5)
    assert results[0].distance == pytest.approx(0.0, abs=1e-5)
    assert results[1].similarity == pytest.approx(2 ** -0.5, abs=1e-5)
    assert results[0].document.id.startswith("tab_1_chunk_0_")
    assert await index.search(unit(1, 0, 0, 0), top_k=0) == []

    stats = index.get_stats()
    assert stats["total_documents"] == 3
    assert stats["total_tabs"] == 2
    assert stats["index_size"] > 0


@pytest.mark.asyncio
async def test_remove_source_hides_its_documents(store, tmp_path: Path) -> None:
    index = make_index(store, tmp_path)
    for n in range(3):
        await index.add_document("7", "https://a", "A", chunk(n), unit(1, n, 0, 0))
    kept = await index.add_document("8", "https://b", "B", chunk(0), unit(1, 0, 0, 0.1))

    assert await index.remove_source_documents("7") == 3
    assert await index.remove_source_documents("7") == 0
    results = await index.search(unit(1, 0, 0, 0), top_k=5)
    assert [result.document.source_id for result in results] == ["8"]
    assert index.source_labels("8") == {kept}
    assert index.get_stats()["orphaned"] == 3
    for source in ("8",):
        for label in index.source_labels(source):
            assert index.get_document(label).source_id == source


@pytest.mark.asyncio
async def test_round_trip_after_flush(store, tmp_path: Path) -> None:
    index = make_index(store, tmp_path)
    await index.add_document("1", "https://a", "A", chunk(0, "alpha"), unit(1, 0, 0, 0))
    await index.add_document("2", "https://b", "B", chunk(0, "beta"), unit(0, 1, 0, 0))
    await index.remove_source_documents("2")
    await index.flush()

    reloaded = make_index(store, tmp_path)
    await reloaded.initialize()
    assert reloaded.status is IndexStatus.READY
    assert reloaded.document_count == 1
    assert reloaded.state.next_label == 2
    results = await reloaded.search(unit(0, 1, 0, 0), top_k=5)
    assert [result.document.chunk.text for result in results] == ["alpha"]
    label = await reloaded.add_document("3", "https://c", "C", chunk(0), unit(0, 0, 1, 0))
    assert label == 2


@pytest.mark.asyncio
async def test_graph_syncs_every_interval(store, tmp_path: Path) -> None:
    index = make_index(store, tmp_path, graph_sync_interval=2)
    await index.add_document("1", "u", "t", chunk(0), unit(1, 0, 0, 0))
    assert await store.get(GRAPH_NAMESPACE, index.config.index_name) is None
    await index.add_document("1", "u", "t", chunk(1), unit(0, 1, 0, 0))
    assert await store.get(GRAPH_NAMESPACE, index.config.index_name) is not None
    assert index.graph_path.exists()


@pytest.mark.asyncio
async def test_mapping_without_graph_keeps_label_counter(store, tmp_path: Path) -> None:
    index = make_index(store, tmp_path)
    for n in range(3):
        await index.add_document("1", "u", "t", chunk(n), unit(1, n, 0, 0))

    reloaded = make_index(store, tmp_path)
    await reloaded.initialize()
    assert reloaded.document_count == 0
    assert reloaded.state.next_label == 3


@pytest.mark.asyncio
async def test_graph_without_mapping_advances_label_counter(store, tmp_path: Path) -> None:
    index = make_index(store, tmp_path, graph_sync_interval=1)
    for n in range(3):
        await index.add_document("1", "u", "t", chunk(n), unit(1, n, 0, 0))
    await store.delete(MAPPING_NAMESPACE, index.config.index_name)

    reloaded = make_index(store, tmp_path)
    await reloaded.initialize()
    assert reloaded.document_count == 0
    assert reloaded.graph_size == 3
    assert reloaded.state.next_label == 3
    assert await reloaded.search(unit(1, 0, 0, 0), top_k=3) == []
    assert await reloaded.add_document("2", "u", "t", chunk(0), unit(0, 0, 0, 1)) == 3


@pytest.mark.asyncio
async def test_mapping_labels_missing_from_graph_are_dropped(store, tmp_path: Path) -> None:
    index = make_index(store, tmp_path, graph_sync_interval=1)
    await index.add_document("1", "u", "t", chunk(0), unit(1, 0, 0, 0))
    stale_graph = await store.get(GRAPH_NAMESPACE, index.config.index_name)
    await index.add_document("2", "u", "t", chunk(0), unit(0, 1, 0, 0))
    await store.put(GRAPH_NAMESPACE, index.config.index_name, stale_graph)

    reloaded = make_index(store, tmp_path)
    await reloaded.initialize()
    assert reloaded.document_count == 1
    assert reloaded.source_labels("2") == set()
    assert reloaded.state.next_label == 2
    results = await reloaded.search(unit(0, 1, 0, 0), top_k=5)
    assert [result.document.source_id for result in results] == ["1"]


@pytest.mark.asyncio
async def test_capacity_eviction_removes_oldest_fifth(store, tmp_path: Path) -> None:
    index = make_index(store, tmp_path, max_elements=10)
    labels = []
    for n in range(10):
        labels.append(await index.add_document(str(n), "u", "t", chunk(0), unit(1, n, 0, 0)))
    assert index.document_count == 8
    assert index.get_document(labels[0]) is None
    assert index.get_document(labels[1]) is None
    assert index.get_document(labels[2]) is not None
    results = await index.search(unit(1, 0, 0, 0), top_k=10)
    assert {result.document.source_id for result in results} == {str(n) for n in range(2, 10)}
    assert index.get_stats()["tombstoned"] == 2


@pytest.mark.asyncio
async def test_insert_succeeds_when_eviction_cannot_persist(store, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    index = make_index(store, tmp_path, max_elements=2)
    first = await index.add_document("1", "u", "t", chunk(0), unit(1, 0, 0, 0))

    async def disk_full() -> None:
        raise TransientIOError("disk full")

    monkeypatch.setattr(index, "_persist_all", disk_full)
    second = await index.add_document("2", "u", "t", chunk(0), unit(0, 1, 0, 0))
    assert second == first + 1
    assert index.get_document(second) is not None
    assert index.document_count == 1
    assert index.graph_size == 2
    results = await index.search(unit(0, 1, 0, 0), top_k=1)
    assert results[0].document.source_id == "2"


@pytest.mark.asyncio
async def test_time_eviction(store, tmp_path: Path) -> None:
    clock = Clock()
    index = make_index(store, tmp_path, clock=clock, retention_days=1)
    await index.add_document("old", "u", "t", chunk(0), unit(1, 0, 0, 0))
    await index.add_document("old", "u", "t", chunk(1), unit(0, 1, 0, 0))
    clock.now += 2 * MS_PER_DAY
    await index.add_document("new", "u", "t", chunk(0), unit(0, 0, 1, 0))
    assert index.document_count == 1
    assert index.source_labels("old") == set()
    clock.now += 2 * MS_PER_DAY
    assert await index.cleanup_old_documents(retention_days=1) == 1
    assert index.get_stats()["last_cleanup"] == clock.now


@pytest.mark.asyncio
async def test_clear_resets_everything(store, tmp_path: Path) -> None:
    index = make_index(store, tmp_path, graph_sync_interval=1)
    await index.add_document("1", "u", "t", chunk(0), unit(1, 0, 0, 0))
    await index.clear()
    assert index.status is IndexStatus.UNINITIALIZED
    assert index.document_count == 0
    assert await index.search(unit(1, 0, 0, 0)) == []
    assert index.is_initialized

    reloaded = make_index(store, tmp_path)
    await reloaded.initialize()
    assert reloaded.document_count == 0
    assert reloaded.graph_size == 0


@pytest.mark.asyncio
async def test_stored_graph_of_other_dimension_is_discarded(store, tmp_path: Path) -> None:
    index = make_index(store, tmp_path, graph_sync_interval=1)
    await index.add_document("1", "u", "t", chunk(0), unit(1, 0, 0, 0))

    wider = make_index(store, tmp_path, dimension=8)
    await wider.initialize()
    assert wider.is_initialized
    assert wider.document_count == 0
    assert wider.graph_size == 0


@pytest.mark.asyncio
async def test_clear_finishes_when_steps_fail(store, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    index = make_index(store, tmp_path, graph_sync_interval=1)
    await index.add_document("1", "u", "t", chunk(0, "old"), unit(1, 0, 0, 0))

    async def refuse_delete(namespace: str, key: str) -> bool:
        raise TransientIOError("store locked")

    async def refuse_persist() -> None:
        raise TransientIOError("disk full")

    with monkeypatch.context() as patch:
        patch.setattr(store, "delete", refuse_delete)
        patch.setattr(index, "_persist_graph", refuse_persist)
        await index.clear()

    assert index.document_count == 0
    assert index.status is IndexStatus.UNINITIALIZED
    label = await index.add_document("2", "u", "t", chunk(0, "new"), unit(1, 0, 0, 0))
    assert index.get_document(label).chunk.text == "new"
    results = await index.search(unit(1, 0, 0, 0), top_k=5)
    assert [result.document.chunk.text for result in results] == ["new"]
