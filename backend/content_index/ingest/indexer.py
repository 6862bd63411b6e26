"""Content indexer: chunk, embed and insert page text; answer queries."""

from __future__ import annotations

import asyncio
import re
from typing import Any, Callable, Protocol

import numpy as np

from content_index.core.errors import (
    EngineConstructionError,
    EngineNotInitializedError,
    NotReadyError,
    VectorValidationError,
)
from content_index.core.logging import get_logger
from content_index.core.metrics import INDEXED_CHUNKS
from content_index.ingest.chunker import TextChunker
from content_index.ingest.dedupe import PageDedupCache
from content_index.ingest.types import IndexerCounters, IndexingOptions, IndexingOutcome
from content_index.retrieval.registry import VectorIndexRegistry
from content_index.retrieval.vector_index import SearchResult, VectorIndex

logger = get_logger(__name__)

_EXCLUDED_URL_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"^chrome://",
        r"^chrome-extension://",
        r"^edge://",
        r"^about:",
        r"^moz-extension://",
        r"^file://",
    )
)


class Engine(Protocol):
    @property
    def is_initialized(self) -> bool: ...

    @property
    def is_initializing(self) -> bool: ...

    @property
    def dimension(self) -> int: ...

    async def initialize(self) -> None: ...

    async def get_embedding(self, text: str) -> np.ndarray: ...

    async def dispose(self) -> None: ...


EngineFactory = Callable[[], Engine]


def should_index_url(url: str) -> bool:
    return bool(url) and not any(pattern.match(url) for pattern in _EXCLUDED_URL_PATTERNS)


class ContentIndexer:
    """Orchestrates chunking, embedding and vector insertion per content source."""

    def __init__(
        self,
        engine_factory: EngineFactory,
        registry: VectorIndexRegistry,
        chunker: TextChunker | None = None,
        options: IndexingOptions | None = None,
    ) -> None:
        self._engine_factory = engine_factory
        self.registry = registry
        self.chunker = chunker or TextChunker()
        self.options = options or IndexingOptions()
        self.engine: Engine | None = None
        self.vector_index: VectorIndex | None = None
        self.dedup = PageDedupCache()
        self.counters = IndexerCounters()
        self._initialized = False
        self._init_task: asyncio.Task[None] | None = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_initializing(self) -> bool:
        return self._init_task is not None and not self._init_task.done()

    def is_engine_ready(self) -> bool:
        return self.engine is not None and self.engine.is_initialized

    def is_engine_initializing(self) -> bool:
        return self.is_initializing or (self.engine is not None and self.engine.is_initializing)

    async def initialize(self) -> None:
        if self._initialized:
            return
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.create_task(self._do_initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def index_content(self, source_id: str | int, url: str, title: str, text: str) -> IndexingOutcome:
        source_key = str(source_id)
        if not self.is_engine_ready() and not self.is_engine_initializing():
            return self._skip(source_key, "engine_not_ready")
        if not self._initialized:
            if not self.is_engine_ready():
                return self._skip(source_key, "indexer_not_initialized")
            await self.initialize()
        if not should_index_url(url):
            return self._skip(source_key, "url_excluded")
        if self.options.skip_duplicates and self.dedup.seen(url, title):
            return self._skip(source_key, "duplicate")

        chunks = self.chunker.chunk_text(text, title)
        outcome = IndexingOutcome(source_id=source_key, status="indexed", chunks_total=len(chunks))
        if not chunks:
            outcome.status = "empty"
            return outcome
        if len(chunks) > self.options.max_chunks_per_page:
            logger.info(
                "Limiting chunks for source %s from %s to %s",
                source_key,
                len(chunks),
                self.options.max_chunks_per_page,
            )
            chunks = chunks[: self.options.max_chunks_per_page]

        engine, vector_index = self._require_components()
        for chunk in chunks:
            self.counters.chunks_queued += 1
            try:
                embedding = await engine.get_embedding(chunk.text)
                await vector_index.add_document(source_key, url, title, chunk, embedding)
            except VectorValidationError:
                raise
            except Exception:
                logger.exception("Failed to index chunk %s of source %s", chunk.index, source_key)
                outcome.chunks_failed += 1
                self.counters.chunks_failed += 1
                INDEXED_CHUNKS.labels(outcome="failed").inc()
            else:
                outcome.chunks_indexed += 1
                self.counters.chunks_indexed += 1
                INDEXED_CHUNKS.labels(outcome="indexed").inc()

        if outcome.chunks_indexed:
            self.dedup.add(source_key, url, title)
        else:
            outcome.status = "failed"
        logger.info(
            "Indexed source %s",
            source_key,
            extra={"ctx_chunks": outcome.chunks_indexed, "ctx_failed": outcome.chunks_failed, "ctx_url": url},
        )
        return outcome

    async def search(self, query: str, top_k: int = 10) -> list[SearchResult]:
        if not self.is_engine_ready() and not self.is_engine_initializing():
            raise NotReadyError("Semantic engine is not ready; initialize the model first")
        if not self._initialized:
            if not self.is_engine_ready():
                raise NotReadyError("Content indexer is not initialized and the semantic engine is not ready")
            await self.initialize()
        try:
            return await self._search_once(query, top_k)
        except EngineNotInitializedError:
            logger.warning("Engine reported uninitialized during search, re-initializing and retrying once")
            engine, _ = self._require_components()
            await engine.initialize()
            return await self._search_once(query, top_k)

    async def remove_source(self, source_id: str | int) -> int:
        if not self._initialized or self.vector_index is None:
            return 0
        source_key = str(source_id)
        removed = await self.vector_index.remove_source_documents(source_key)
        self.dedup.forget_source(source_key)
        return removed

    def get_stats(self) -> dict[str, Any]:
        if self.vector_index is not None:
            stats = self.vector_index.get_stats()
        else:
            stats = {"total_documents": 0, "total_tabs": 0, "index_size": 0}
        stats.update(
            {
                "indexed_pages": len(self.dedup),
                "is_initialized": self._initialized,
                "engine_ready": self.is_engine_ready(),
                "engine_initializing": self.is_engine_initializing(),
            }
        )
        stats.update(self.counters.to_dict())
        return stats

    async def clear_all(self) -> None:
        if not self._initialized or self.vector_index is None:
            return
        await self.vector_index.clear()
        self.dedup.clear()

    async def reinitialize(self) -> None:
        """Rebuild for a new model: clear old vectors, then bind a fresh engine and index.

        Cleanup failures are logged and skipped; failing to build the new
        engine aborts the call.
        """
        logger.info("Reinitializing content indexer")
        self._initialized = False
        self._init_task = None

        if self.vector_index is not None:
            try:
                await self.vector_index.clear()
            except Exception:
                logger.exception("Failed to clear vector index during reinitialization")
        try:
            await self.registry.clear_all_vector_data()
        except Exception:
            logger.exception("Failed to remove stored vector data during reinitialization")
        self.vector_index = None

        self.dedup.clear()

        previous, self.engine = self.engine, None
        try:
            engine = self._engine_factory()
        except Exception as exc:
            await self._dispose_engine(previous)
            raise EngineConstructionError(f"Failed to construct embedding engine: {exc}") from exc
        self.engine = engine
        await self._dispose_engine(previous)

        await self.initialize()
        logger.info("Content indexer reinitialized", extra={"ctx_dimension": self.engine.dimension})

    async def rebind_engine(self) -> None:
        """Swap in a fresh engine for a model with the same dimension, keeping the index."""
        previous = self.engine
        try:
            engine = self._engine_factory()
        except Exception as exc:
            raise EngineConstructionError(f"Failed to construct embedding engine: {exc}") from exc
        await engine.initialize()
        self.engine = engine
        await self._dispose_engine(previous)

    async def close(self) -> None:
        """Persist the graph and release the engine."""
        if self.vector_index is not None and self.vector_index.is_initialized:
            try:
                await self.vector_index.flush()
            except Exception:
                logger.exception("Failed to flush vector index on close")
        engine, self.engine = self.engine, None
        self._initialized = False
        await self._dispose_engine(engine)

    # Internal helpers -------------------------------------------------

    async def _do_initialize(self) -> None:
        if self.engine is None:
            self.engine = self._engine_factory()
        await self.engine.initialize()
        self.vector_index = await self.registry.acquire(self.engine.dimension)
        self._initialized = True
        logger.info("Content indexer initialized", extra={"ctx_dimension": self.engine.dimension})

    def _require_components(self) -> tuple[Engine, VectorIndex]:
        engine, vector_index = self.engine, self.vector_index
        if engine is None or vector_index is None:
            raise NotReadyError("Content indexer is being reinitialized; engine or vector index is unavailable")
        return engine, vector_index

    async def _search_once(self, query: str, top_k: int) -> list[SearchResult]:
        engine, vector_index = self._require_components()
        embedding = await engine.get_embedding(query)
        return await vector_index.search(embedding, top_k)

    async def _dispose_engine(self, engine: Engine | None) -> None:
        if engine is None or engine is self.engine:
            return
        try:
            await engine.dispose()
        except Exception:
            logger.exception("Failed to dispose previous embedding engine")

    def _skip(self, source_id: str, reason: str) -> IndexingOutcome:
        self.counters.pages_skipped += 1
        logger.debug("Skipping source %s: %s", source_id, reason)
        return IndexingOutcome(source_id=source_id, status="skipped", detail=reason)


__all__ = ["ContentIndexer", "should_index_url", "Engine"]
