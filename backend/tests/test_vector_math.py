"""Tests for similarity math and the LRU cache."""

import math

import numpy as np
import pytest

from content_index.embedding.lru import LRUCache
from content_index.embedding.vector_math import (
    ALIGNMENT_BYTES,
    AlignedBufferPool,
    VectorMath,
    allocate_aligned,
    scalar_cosine,
)


def test_vectorized_matches_scalar() -> None:
    rng = np.random.default_rng(7)
    rows = rng.normal(size=(6, 32)).astype(np.float32)
    query = rng.normal(size=32).astype(np.float32)
    fast = VectorMath(enable_simd=True)
    slow = VectorMath(enable_simd=False)
    assert fast.simd_enabled
    assert not slow.simd_enabled
    for got, want in zip(fast.batch_similarity(rows.tolist(), query.tolist()), slow.batch_similarity(rows.tolist(), query.tolist())):
        assert math.isclose(got, want, rel_tol=1e-4, abs_tol=1e-5)
    matrix = fast.similarity_matrix(rows[:2].tolist(), rows[2:5].tolist())
    assert len(matrix) == 2 and len(matrix[0]) == 3
    assert math.isclose(matrix[1][2], scalar_cosine(rows[1].tolist(), rows[4].tolist()), rel_tol=1e-4, abs_tol=1e-5)


def test_cosine_edge_cases() -> None:
    vm = VectorMath()
    assert vm.cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert math.isclose(vm.cosine_similarity([1.0, 1.0], [2.0, 2.0]), 1.0, rel_tol=1e-6)
    with pytest.raises(ValueError):
        vm.cosine_similarity([1.0], [1.0, 2.0])
    assert vm.batch_similarity([], [1.0]) == []


def test_aligned_pool_reuses_buffers() -> None:
    assert allocate_aligned(10).ctypes.data % ALIGNMENT_BYTES == 0
    pool = AlignedBufferPool(max_size=2)
    buffer = pool.acquire(8)
    pool.release(buffer)
    again = pool.acquire(4)
    assert again is buffer
    assert pool.allocations == 1
    for _ in range(3):
        pool.release(pool.acquire(16))
    pool.release(AlignedBufferPool().acquire(1))
    pool.release(AlignedBufferPool().acquire(1))
    assert len(pool) <= 2


def test_lru_eviction_and_hit_rate() -> None:
    cache: LRUCache[str, int] = LRUCache(2)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1
    cache.set("c", 3)
    assert "b" not in cache
    assert cache.get("b") is None
    assert cache.hit_rate == 0.5
    disabled: LRUCache[str, int] = LRUCache(0)
    disabled.set("a", 1)
    assert len(disabled) == 0
