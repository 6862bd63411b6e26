"""Persistent HNSW vector index with a label to document mapping."""

from __future__ import annotations

import asyncio
import enum
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

import faiss
import numpy as np
import orjson

from content_index.core.config import Settings
from content_index.core.errors import NotReadyError, VectorValidationError
from content_index.core.logging import get_logger
from content_index.core.metrics import INDEX_DOCUMENTS, INDEX_EVICTIONS
from content_index.db.store import BlobStore
from content_index.ingest.types import TextChunk
from content_index.utils.ids import document_id
from content_index.utils.time import days_to_ms, now_ms

logger = get_logger(__name__)

GRAPH_NAMESPACE = "graph"
MAPPING_NAMESPACE = "mapping"
NODE_OVERHEAD_BYTES = 64
LABEL_BYTES = 8
GRAPH_OVERHEAD_RATIO = 0.3


class IndexStatus(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CLEARING = "clearing"


@dataclass(slots=True)
class VectorIndexConfig:
    dimension: int = 384
    max_elements: int = 100_000
    ef_construction: int = 200
    m: int = 48
    ef_search: int = 50
    index_name: str = "tab_content_index.dat"
    data_dir: Path = Path(".")
    auto_cleanup: bool = True
    retention_days: float = 30
    capacity_evict_fraction: float = 0.2
    graph_sync_interval: int = 10

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "VectorIndexConfig":
        values: dict[str, Any] = {
            "max_elements": settings.max_elements,
            "ef_construction": settings.ef_construction,
            "m": settings.m,
            "ef_search": settings.ef_search,
            "index_name": settings.index_name,
            "data_dir": settings.data_dir,
            "auto_cleanup": settings.auto_cleanup,
            "retention_days": settings.retention_days,
            "capacity_evict_fraction": settings.capacity_evict_fraction,
            "graph_sync_interval": settings.graph_sync_interval,
        }
        values.update(overrides)
        return cls(**values)


@dataclass(slots=True)
class IndexState:
    """Label counter and construction parameters persisted with the mapping."""

    next_label: int
    max_elements: int
    dimension: int
    ef_construction: int
    m: int
    ef_search: int

    def to_dict(self) -> dict[str, int]:
        return {
            "nextLabel": self.next_label,
            "maxElements": self.max_elements,
            "dimension": self.dimension,
            "efConstruction": self.ef_construction,
            "M": self.m,
            "efSearch": self.ef_search,
        }


@dataclass(slots=True)
class VectorDocument:
    id: str
    source_id: str
    url: str
    title: str
    chunk: TextChunk
    embedding: np.ndarray
    inserted_at: int

    def metadata(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sourceId": self.source_id,
            "url": self.url,
            "title": self.title,
            "chunk": self.chunk.to_dict(),
            "insertedAt": self.inserted_at,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = self.metadata()
        payload["embedding"] = self.embedding.tolist()
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VectorDocument":
        return cls(
            id=str(data["id"]),
            source_id=str(data["sourceId"]),
            url=str(data.get("url", "")),
            title=str(data.get("title", "")),
            chunk=TextChunk.from_dict(data["chunk"]),
            embedding=np.asarray(data["embedding"], dtype=np.float32),
            inserted_at=int(data["insertedAt"]),
        )


@dataclass(slots=True)
class SearchResult:
    document: VectorDocument
    similarity: float
    distance: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "document": self.document.metadata(),
            "similarity": self.similarity,
            "distance": self.distance,
        }


@dataclass(slots=True)
class _Mapping:
    documents: dict[int, VectorDocument] = field(default_factory=dict)
    source_labels: dict[str, set[int]] = field(default_factory=dict)
    deleted: set[int] = field(default_factory=set)
    orphaned: set[int] = field(default_factory=set)
    next_label: int = 0
    dimension: int | None = None
    last_cleanup: int = 0


class VectorIndex:
    """ANN graph plus the document mapping that gives its labels meaning.

    The graph is a faiss ``IndexHNSWFlat`` over L2-normalized vectors with an
    inner-product metric, wrapped in ``IndexIDMap2`` so graph ids are our
    labels; cosine distance is ``1 - inner_product``. HNSW cannot remove
    points, so evicted labels are tombstoned and labels dropped by source
    removal become orphans; both stay in the graph until it is rebuilt and
    are filtered out of search results.

    The mapping is saved after every insert. The graph is written to its
    backing file and synced into the blob store every ``graph_sync_interval``
    inserts, and whenever eviction or ``clear`` rewrites it.
    """

    def __init__(
        self,
        store: BlobStore,
        config: VectorIndexConfig,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.config = config
        self._clock = clock
        self._graph = self._new_graph()
        self._map = _Mapping()
        self._status = IndexStatus.UNINITIALIZED
        self._init_task: asyncio.Task[None] | None = None
        self._inserts_since_sync = 0

    @property
    def status(self) -> IndexStatus:
        return self._status

    @property
    def is_initialized(self) -> bool:
        return self._status is IndexStatus.READY

    @property
    def dimension(self) -> int:
        return self.config.dimension

    @property
    def graph_path(self) -> Path:
        return self.config.data_dir.expanduser() / self.config.index_name

    @property
    def graph_size(self) -> int:
        return int(self._graph.ntotal)

    @property
    def document_count(self) -> int:
        return len(self._map.documents)

    @property
    def state(self) -> IndexState:
        return IndexState(
            next_label=self._map.next_label,
            max_elements=self.config.max_elements,
            dimension=self.config.dimension,
            ef_construction=self.config.ef_construction,
            m=self.config.m,
            ef_search=self.config.ef_search,
        )

    def get_document(self, label: int) -> VectorDocument | None:
        return self._map.documents.get(label)

    def source_labels(self, source_id: str) -> set[int]:
        return set(self._map.source_labels.get(str(source_id), set()))

    async def initialize(self) -> None:
        """Load the persisted graph and mapping; concurrent callers share one load."""
        if self._status is IndexStatus.READY:
            return
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.create_task(self._do_initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def add_document(
        self,
        source_id: str | int,
        url: str,
        title: str,
        chunk: TextChunk,
        embedding: Sequence[float] | np.ndarray,
    ) -> int:
        vector = self._validate(embedding, "embedding")
        await self._ensure_ready()

        label = self._map.next_label
        self._map.next_label += 1
        self._graph.add_with_ids(vector.reshape(1, -1), np.array([label], dtype=np.int64))

        source_key = str(source_id)
        inserted_at = self._clock()
        self._map.documents[label] = VectorDocument(
            id=document_id(source_key, chunk.index, inserted_at),
            source_id=source_key,
            url=url,
            title=title,
            chunk=chunk,
            embedding=vector,
            inserted_at=inserted_at,
        )
        self._map.source_labels.setdefault(source_key, set()).add(label)

        await self._save_mapping()
        self._inserts_since_sync += 1
        if self._inserts_since_sync >= self.config.graph_sync_interval:
            await self._persist_graph()
        self._update_gauge()

        if self.config.auto_cleanup:
            # The insert is already committed; eviction failures must not undo it.
            try:
                await self.check_and_perform_auto_cleanup()
            except Exception:
                logger.exception("Auto cleanup failed after inserting label %s", label)
        return label

    async def search(self, query_embedding: Sequence[float] | np.ndarray, top_k: int = 10) -> list[SearchResult]:
        query = self._validate(query_embedding, "query embedding")
        await self._ensure_ready()
        total = self.graph_size
        if total == 0 or top_k <= 0:
            return []

        unreachable = max(0, total - len(self._map.documents))
        fetch = min(total, top_k + unreachable)
        hnsw = faiss.downcast_index(self._graph.index).hnsw
        hnsw.efSearch = max(self.config.ef_search, fetch)
        scores, labels = self._graph.search(query.reshape(1, -1), fetch)

        results: list[SearchResult] = []
        unmapped: list[int] = []
        for score, label in zip(scores[0], labels[0]):
            label = int(label)
            if label < 0:
                continue
            document = self._map.documents.get(label)
            if document is None:
                if label not in self._map.deleted and label not in self._map.orphaned:
                    unmapped.append(label)
                continue
            distance = 1.0 - float(score)
            results.append(SearchResult(document=document, similarity=1.0 - distance, distance=distance))

        if unmapped:
            logger.warning(
                "Search skipped graph labels without documents",
                extra={
                    "ctx_sample_labels": unmapped[:10],
                    "ctx_unmapped": len(unmapped),
                    "ctx_mapping_size": len(self._map.documents),
                    "ctx_graph_size": total,
                },
            )
        results.sort(key=lambda item: item.similarity, reverse=True)
        return results[:top_k]

    async def remove_source_documents(self, source_id: str | int) -> int:
        """Drop a source's documents from the mapping; their graph entries become orphans."""
        await self._ensure_ready()
        labels = self._map.source_labels.pop(str(source_id), set())
        if not labels:
            return 0
        for label in labels:
            self._map.documents.pop(label, None)
            self._map.orphaned.add(label)
        await self._save_mapping()
        self._update_gauge()
        logger.info("Removed %s documents for source %s", len(labels), source_id)
        return len(labels)

    async def check_and_perform_auto_cleanup(self) -> int:
        removed = 0
        if len(self._map.documents) >= self.config.max_elements:
            count = max(1, math.floor(self.config.max_elements * self.config.capacity_evict_fraction))
            removed += await self._evict_oldest(count)
        removed += await self.cleanup_old_documents()
        return removed

    async def cleanup_old_documents(self, retention_days: float | None = None) -> int:
        """Evict documents inserted longer ago than the retention window."""
        window = days_to_ms(retention_days if retention_days is not None else self.config.retention_days)
        now = self._clock()
        self._map.last_cleanup = now
        expired = [label for label, doc in self._map.documents.items() if now - doc.inserted_at > window]
        if not expired:
            return 0
        for label in expired:
            self._remove_document_by_label(label)
        INDEX_EVICTIONS.labels(policy="time").inc(len(expired))
        logger.info("Time-based cleanup removed %s documents", len(expired))
        await self._persist_all()
        return len(expired)

    async def clear(self) -> None:
        """Reset graph, mapping and every persisted copy of them.

        Each step is attempted even when an earlier one fails so the index
        always ends up usable.
        """
        self._status = IndexStatus.CLEARING
        name = self.config.index_name
        try:
            await asyncio.to_thread(self.graph_path.unlink, missing_ok=True)
        except OSError:
            logger.exception("Failed to delete graph file %s", self.graph_path)
        try:
            await self.store.delete(GRAPH_NAMESPACE, name)
        except Exception:
            logger.exception("Failed to delete stored graph %s", name)
        try:
            self._graph = self._new_graph()
        except Exception:
            logger.exception("Failed to create empty graph for %s", name)
        try:
            await self._persist_graph()
        except Exception:
            logger.exception("Failed to persist empty graph for %s", name)
        self._map = _Mapping(dimension=self.config.dimension)
        self._inserts_since_sync = 0
        try:
            await self._save_mapping()
        except Exception:
            logger.exception("Failed to save empty mapping for %s", name)
        self._update_gauge()
        self._status = IndexStatus.UNINITIALIZED
        logger.info("Cleared vector index %s", name)

    async def flush(self) -> None:
        """Write graph and mapping now instead of waiting for the next sync interval."""
        await self._ensure_ready()
        await self._persist_all()

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_documents": len(self._map.documents),
            "total_tabs": len(self._map.source_labels),
            "index_size": self._estimate_size(),
            "is_initialized": self.is_initialized,
            "graph_elements": self.graph_size,
            "tombstoned": len(self._map.deleted),
            "orphaned": len(self._map.orphaned),
            "next_label": self._map.next_label,
            "dimension": self.config.dimension,
            "last_cleanup": self._map.last_cleanup,
        }

    # Internal helpers -------------------------------------------------

    async def _ensure_ready(self) -> None:
        if self._status is IndexStatus.CLEARING:
            raise NotReadyError(f"Vector index {self.config.index_name} is being cleared")
        if self._status is not IndexStatus.READY:
            await self.initialize()

    async def _do_initialize(self) -> None:
        self._status = IndexStatus.INITIALIZING
        try:
            await self._load()
        except Exception:
            logger.exception("Failed to load vector index %s, starting empty", self.config.index_name)
            self._graph = self._new_graph()
            self._map = _Mapping(dimension=self.config.dimension)
        self._inserts_since_sync = 0
        self._status = IndexStatus.READY
        self._update_gauge()
        logger.info(
            "Vector index ready",
            extra={
                "ctx_index": self.config.index_name,
                "ctx_documents": len(self._map.documents),
                "ctx_graph_size": self.graph_size,
                "ctx_next_label": self._map.next_label,
            },
        )

    async def _load(self) -> None:
        name = self.config.index_name
        graph_blob = await self.store.get(GRAPH_NAMESPACE, name)
        if graph_blob is None and self.graph_path.exists():
            graph_blob = await asyncio.to_thread(self.graph_path.read_bytes)
        mapping_blob = await self.store.get(MAPPING_NAMESPACE, name)
        mapping = _decode_mapping(mapping_blob) if mapping_blob is not None else _Mapping()

        if graph_blob is None:
            self._graph = self._new_graph()
            if mapping.documents:
                logger.warning(
                    "Document mapping found without a persisted graph; mapped documents are unreachable",
                    extra={"ctx_mapping_size": len(mapping.documents), "ctx_index": name},
                )
            self._map = _Mapping(next_label=mapping.next_label, dimension=self.config.dimension)
            return

        graph = faiss.deserialize_index(np.frombuffer(graph_blob, dtype=np.uint8))
        if graph.d != self.config.dimension or (mapping.dimension not in (None, self.config.dimension)):
            logger.warning(
                "Persisted index dimension does not match configuration, starting empty",
                extra={"ctx_stored_dimension": graph.d, "ctx_dimension": self.config.dimension},
            )
            self._graph = self._new_graph()
            self._map = _Mapping(dimension=self.config.dimension)
            return

        self._graph = graph
        self._map = mapping
        self._map.dimension = self.config.dimension
        self._reconcile()

    def _reconcile(self) -> None:
        """Repair the label counter and mapping against the labels the graph holds."""
        graph_labels = self._graph_labels()
        highest = max(graph_labels, default=-1)
        if not self._map.documents and graph_labels:
            logger.warning(
                "Graph has entries but the document mapping is empty",
                extra={"ctx_graph_size": len(graph_labels), "ctx_highest_label": highest},
            )
        if self._map.next_label <= highest:
            self._map.next_label = highest + 1

        missing = [label for label in self._map.documents if label not in graph_labels]
        if missing:
            logger.warning(
                "Mapping references labels absent from the graph; dropping them",
                extra={"ctx_sample_labels": missing[:10], "ctx_missing": len(missing)},
            )
            for label in missing:
                document = self._map.documents.pop(label)
                labels = self._map.source_labels.get(document.source_id)
                if labels is not None:
                    labels.discard(label)
                    if not labels:
                        del self._map.source_labels[document.source_id]
        self._map.deleted &= graph_labels
        self._map.orphaned &= graph_labels

    def _graph_labels(self) -> set[int]:
        if self._graph.ntotal == 0:
            return set()
        return {int(label) for label in faiss.vector_to_array(self._graph.id_map)}

    def _new_graph(self) -> faiss.IndexIDMap2:
        base = faiss.IndexHNSWFlat(self.config.dimension, self.config.m, faiss.METRIC_INNER_PRODUCT)
        base.hnsw.efConstruction = self.config.ef_construction
        base.hnsw.efSearch = self.config.ef_search
        return faiss.IndexIDMap2(base)

    def _validate(self, embedding: Sequence[float] | np.ndarray, what: str) -> np.ndarray:
        try:
            vector = np.asarray(embedding, dtype=np.float32)
        except (TypeError, ValueError) as exc:
            raise VectorValidationError(f"Invalid {what}: {exc}") from exc
        if vector.ndim != 1 or vector.shape[0] != self.config.dimension:
            raise VectorValidationError(
                f"Invalid {what} dimension: expected {self.config.dimension}, got {vector.shape[0] if vector.ndim else 0}"
            )
        if not np.isfinite(vector).all():
            index = int(np.flatnonzero(~np.isfinite(vector))[0])
            raise VectorValidationError(f"Invalid {what} value at index {index}: {vector[index]}")
        return np.ascontiguousarray(vector)

    def _remove_document_by_label(self, label: int) -> None:
        document = self._map.documents.pop(label, None)
        self._map.deleted.add(label)
        if document is None:
            return
        labels = self._map.source_labels.get(document.source_id)
        if labels is not None:
            labels.discard(label)
            if not labels:
                del self._map.source_labels[document.source_id]

    async def _evict_oldest(self, count: int) -> int:
        ordered = sorted(self._map.documents.items(), key=lambda item: item[1].inserted_at)
        victims = [label for label, _doc in ordered[:count]]
        for label in victims:
            self._remove_document_by_label(label)
        INDEX_EVICTIONS.labels(policy="capacity").inc(len(victims))
        logger.info(
            "Capacity eviction removed %s documents",
            len(victims),
            extra={"ctx_remaining": len(self._map.documents), "ctx_max_elements": self.config.max_elements},
        )
        await self._persist_all()
        return len(victims)

    async def _persist_all(self) -> None:
        await self._persist_graph()
        await self._save_mapping()
        self._update_gauge()

    async def _persist_graph(self) -> None:
        blob = faiss.serialize_index(self._graph).tobytes()
        path = self.graph_path
        await asyncio.to_thread(_write_file, path, blob)
        await self.store.put(GRAPH_NAMESPACE, self.config.index_name, blob)
        self._inserts_since_sync = 0

    async def _save_mapping(self) -> None:
        await self.store.put(MAPPING_NAMESPACE, self.config.index_name, _encode_mapping(self._map, self.state))

    def _estimate_size(self) -> int:
        documents = self._map.documents.values()
        mapping_bytes = sum(len(orjson.dumps(doc.metadata())) * 2 + LABEL_BYTES for doc in documents)
        vector_bytes = len(self._map.documents) * self.config.dimension * 4
        graph_bytes = int(vector_bytes * (1 + GRAPH_OVERHEAD_RATIO)) + len(self._map.documents) * NODE_OVERHEAD_BYTES
        return mapping_bytes + graph_bytes

    def _update_gauge(self) -> None:
        INDEX_DOCUMENTS.labels(index=self.config.index_name).set(len(self._map.documents))


def _write_file(path: Path, blob: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(blob)
    tmp.replace(path)


def _encode_mapping(mapping: _Mapping, state: IndexState) -> bytes:
    payload = {
        "documents": [[label, doc.to_dict()] for label, doc in mapping.documents.items()],
        "sourceDocuments": [[source, sorted(labels)] for source, labels in mapping.source_labels.items()],
        "nextLabel": mapping.next_label,
        "deletedLabels": sorted(mapping.deleted),
        "orphanedLabels": sorted(mapping.orphaned),
        "lastCleanup": mapping.last_cleanup,
        "state": state.to_dict(),
    }
    return orjson.dumps(payload)


def _decode_mapping(blob: bytes) -> _Mapping:
    data = orjson.loads(blob)
    documents = {int(label): VectorDocument.from_dict(doc) for label, doc in data.get("documents", [])}
    source_labels = {
        str(source): {int(label) for label in labels if int(label) in documents}
        for source, labels in data.get("sourceDocuments", [])
    }
    state = data.get("state") or {}
    return _Mapping(
        documents=documents,
        source_labels={source: labels for source, labels in source_labels.items() if labels},
        deleted={int(label) for label in data.get("deletedLabels", [])},
        orphaned={int(label) for label in data.get("orphanedLabels", [])},
        next_label=int(data.get("nextLabel", 0)),
        dimension=state.get("dimension"),
        last_cleanup=int(data.get("lastCleanup", 0)),
    )


__all__ = [
    "VectorIndex",
    "VectorIndexConfig",
    "VectorDocument",
    "IndexState",
    "IndexStatus",
    "SearchResult",
    "GRAPH_NAMESPACE",
    "MAPPING_NAMESPACE",
]
