"""Embedding engine: tokenization, worker inference, pooling and caches."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np

from content_index.cache.model_cache import ModelArtifactCache
from content_index.core.config import Settings
from content_index.core.errors import EngineNotInitializedError
from content_index.core.logging import get_logger
from content_index.core.metrics import EMBED_CACHE
from content_index.embedding.backends import ModelBackend, TextTokenizer, create_backend
from content_index.embedding.lru import LRUCache
from content_index.embedding.models import DEFAULT_PRESET, ModelInfo, get_model_info
from content_index.embedding.tokenizer import TokenizedText, pad_batch
from content_index.embedding.vector_math import VectorMath
from content_index.embedding.worker import InferPayload, WorkerClient

logger = get_logger(__name__)

TOKEN_CACHE_LIMIT = 200
BATCH_SIZE = 16


@dataclass(slots=True)
class EngineConfig:
    model_preset: str = DEFAULT_PRESET
    model_version: str = "quantized"
    max_length: int = 256
    cache_size: int = 500
    concurrent_limit: int = 1
    num_threads: int = 1
    use_simd: bool = True

    @property
    def info(self) -> ModelInfo:
        return get_model_info(self.model_preset)

    @property
    def dimension(self) -> int:
        return self.info.dimension

    def key(self) -> tuple[str, str, str, int]:
        """Fields whose change requires a new engine."""
        info = self.info
        return (self.model_preset, self.model_version, info.identifier, info.dimension)

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "EngineConfig":
        values: dict[str, Any] = {
            "model_preset": settings.model_preset,
            "model_version": settings.model_version,
            "max_length": settings.max_length,
            "cache_size": settings.embedding_cache_size,
            "concurrent_limit": settings.resolved_concurrent_limit,
            "num_threads": settings.inference_threads,
            "use_simd": settings.use_simd,
        }
        values.update(overrides)
        return cls(**values)


class EmbeddingEngine:
    """Maps text to L2-normalized float32 embeddings.

    Model inference runs in an :class:`InferenceWorker` thread reached through
    a :class:`WorkerClient`. Tokenizations and final embeddings are cached in
    separate LRUs keyed by the literal input text.
    """

    def __init__(
        self,
        config: EngineConfig,
        model_cache: ModelArtifactCache | None = None,
        backend: ModelBackend | None = None,
    ) -> None:
        self.config = config
        self.backend = backend or create_backend(config.info, model_cache)
        self._embedding_cache: LRUCache[str, np.ndarray] = LRUCache(config.cache_size)
        self._token_cache: LRUCache[str, TokenizedText] = LRUCache(min(config.cache_size, TOKEN_CACHE_LIMIT))
        self._tokenizer: TextTokenizer | None = None
        self._client: WorkerClient | None = None
        self._math: VectorMath | None = None
        self._initialized = False
        self._init_task: asyncio.Task[None] | None = None
        self._total_embeddings = 0
        self._cached_embeddings = 0
        self._total_inference_ms = 0.0

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_initializing(self) -> bool:
        return self._init_task is not None and not self._init_task.done()

    @property
    def dimension(self) -> int:
        return self.config.dimension

    @property
    def math(self) -> VectorMath:
        if self._math is None:
            self._math = VectorMath(self.config.use_simd)
        return self._math

    async def initialize(self) -> None:
        """Load the model once; concurrent callers share the in-flight setup."""
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

    async def get_embedding(self, text: str) -> np.ndarray:
        self._require_initialized()
        self._total_embeddings += 1
        cached = self._embedding_cache.get(text)
        if cached is not None:
            self._cached_embeddings += 1
            EMBED_CACHE.labels(result="hit").inc()
            return cached.copy()
        EMBED_CACHE.labels(result="miss").inc()
        vectors = await self._embed_uncached([text])
        self._embedding_cache.set(text, vectors[0])
        return vectors[0].copy()

    async def get_embeddings_batch(self, texts: Sequence[str]) -> list[np.ndarray]:
        self._require_initialized()
        if not texts:
            return []
        results: dict[str, np.ndarray] = {}
        missing: list[str] = []
        for text in texts:
            self._total_embeddings += 1
            if text in results or text in missing:
                continue
            cached = self._embedding_cache.get(text)
            if cached is not None:
                self._cached_embeddings += 1
                results[text] = cached
            else:
                missing.append(text)
        for start in range(0, len(missing), BATCH_SIZE):
            group = missing[start : start + BATCH_SIZE]
            for text, vector in zip(group, await self._embed_uncached(group)):
                self._embedding_cache.set(text, vector)
                results[text] = vector
        return [results[text].copy() for text in texts]

    async def compute_similarity(self, text_a: str, text_b: str) -> float:
        first = await self.get_embedding(text_a)
        second = await self.get_embedding(text_b)
        return self.math.cosine_similarity(first, second)

    async def compute_similarity_batch(self, pairs: Sequence[tuple[str, str]]) -> list[float]:
        if not pairs:
            return []
        texts = [text for pair in pairs for text in pair]
        vectors = await self.get_embeddings_batch(texts)
        return [
            self.math.cosine_similarity(vectors[2 * index], vectors[2 * index + 1])
            for index in range(len(pairs))
        ]

    async def compute_similarity_matrix(self, texts_a: Sequence[str], texts_b: Sequence[str]) -> list[list[float]]:
        vectors_a = await self.get_embeddings_batch(texts_a)
        vectors_b = await self.get_embeddings_batch(texts_b)
        return self.math.similarity_matrix(vectors_a, vectors_b)

    async def get_stats(self) -> dict[str, Any]:
        worker_stats: dict[str, float] = {}
        if self._client is not None and self._initialized:
            worker_stats = await self._client.stats()
        computed = self._total_embeddings - self._cached_embeddings
        return {
            "model_preset": self.config.model_preset,
            "dimension": self.dimension,
            "is_initialized": self._initialized,
            "total_embeddings": self._total_embeddings,
            "cached_embeddings": self._cached_embeddings,
            "average_inference_ms": round(self._total_inference_ms / computed, 3) if computed else 0.0,
            "embedding_cache_size": len(self._embedding_cache),
            "embedding_cache_hit_rate": round(self._embedding_cache.hit_rate, 4),
            "token_cache_size": len(self._token_cache),
            "concurrent_limit": self._client.limiter.limit if self._client else self.config.concurrent_limit,
            "pending_tasks": self._client.limiter.pending if self._client else 0,
            "simd_enabled": self._math.simd_enabled if self._math else False,
            "worker": worker_stats,
        }

    def clear_caches(self) -> None:
        self._embedding_cache.clear()
        self._token_cache.clear()

    async def dispose(self) -> None:
        self._initialized = False
        if self._client is not None:
            await self._client.close()
            self._client = None
        self._tokenizer = None
        if self._math is not None:
            self._math.pool.clear()
        self.clear_caches()
        logger.info("Disposed embedding engine for %s", self.config.model_preset)

    # Internal helpers -------------------------------------------------

    async def _do_initialize(self) -> None:
        info = self.config.info
        started = time.perf_counter()
        artifacts = await self.backend.load(info, self.config.model_version, self.config.max_length)
        client = WorkerClient(self.backend.create_session, self.config.concurrent_limit)
        client.start()
        try:
            await client.initialize(artifacts.model_data, self.config.num_threads)
        except Exception:
            await client.close()
            raise
        self._tokenizer = artifacts.tokenizer
        self._client = client
        self._math = VectorMath(self.config.use_simd)
        self._initialized = True
        logger.info(
            "Embedding engine ready",
            extra={
                "ctx_model": info.identifier,
                "ctx_dimension": info.dimension,
                "ctx_backend": self.backend.name,
                "ctx_elapsed_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )

    def _require_initialized(self) -> None:
        if not self._initialized or self._client is None:
            raise EngineNotInitializedError("Embedding engine is not initialized; call initialize() first")

    def _tokenize(self, text: str) -> TokenizedText:
        cached = self._token_cache.get(text)
        if cached is not None:
            return cached
        if self._tokenizer is None:
            raise EngineNotInitializedError("Tokenizer is not loaded; call initialize() first")
        tokens = self._tokenizer.encode(text)
        self._token_cache.set(text, tokens)
        return tokens

    async def _embed_uncached(self, texts: Sequence[str]) -> list[np.ndarray]:
        client, tokenizer = self._client, self._tokenizer
        if client is None or tokenizer is None:
            raise EngineNotInitializedError("Embedding engine is not initialized; call initialize() first")
        batch = pad_batch([self._tokenize(text) for text in texts], pad_id=tokenizer.pad_id)
        payload = InferPayload(
            input_ids=batch.input_ids.ravel(),
            attention_mask=batch.attention_mask.ravel(),
            token_type_ids=batch.token_type_ids.ravel(),
            dims=batch.dims,
        )
        result = await client.infer(payload)
        self._total_inference_ms += result.inference_ms
        pooled = mean_pool(result.hidden_state, batch.attention_mask)
        return [l2_normalize(row) for row in pooled]


def mean_pool(hidden_state: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
    """Average token states over the attention mask: ``(batch, seq, h) -> (batch, h)``."""
    mask = attention_mask.astype(np.float32)[..., np.newaxis]
    summed = (hidden_state * mask).sum(axis=1)
    counts = np.clip(mask.sum(axis=1), 1e-9, None)
    return (summed / counts).astype(np.float32)


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vector))
    if norm == 0:
        return vector.astype(np.float32, copy=True)
    return (vector / norm).astype(np.float32)


__all__ = ["EmbeddingEngine", "EngineConfig", "mean_pool", "l2_normalize"]
