"""Similarity math with a vectorized path and a scalar fallback."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from content_index.core.logging import get_logger

logger = get_logger(__name__)

ALIGNMENT_BYTES = 16
MAX_POOLED_BUFFERS = 5
_FLOAT_BYTES = np.dtype(np.float32).itemsize


@dataclass(slots=True)
class AlignedBuffer:
    data: np.ndarray

    @property
    def capacity(self) -> int:
        return int(self.data.size)


def allocate_aligned(size: int, alignment: int = ALIGNMENT_BYTES) -> np.ndarray:
    """Float32 array of ``size`` elements whose data pointer is ``alignment``-aligned."""
    raw = np.empty(size * _FLOAT_BYTES + alignment, dtype=np.uint8)
    offset = (-raw.ctypes.data) % alignment
    return raw[offset : offset + size * _FLOAT_BYTES].view(np.float32)


class AlignedBufferPool:
    """Reuses aligned float buffers; at most ``max_size`` are kept."""

    def __init__(self, max_size: int = MAX_POOLED_BUFFERS) -> None:
        self.max_size = max_size
        self._free: list[AlignedBuffer] = []
        self.allocations = 0

    def acquire(self, size: int) -> AlignedBuffer:
        for index, buffer in enumerate(self._free):
            if buffer.capacity >= size:
                return self._free.pop(index)
        self.allocations += 1
        return AlignedBuffer(allocate_aligned(max(size, 1)))

    def release(self, buffer: AlignedBuffer) -> None:
        if len(self._free) < self.max_size:
            self._free.append(buffer)

    def clear(self) -> None:
        self._free.clear()

    def __len__(self) -> int:
        return len(self._free)


def probe_simd_support() -> bool:
    """Check that the vectorized kernels run and agree with the scalar ones."""
    try:
        a = np.linspace(0.1, 1.6, 16, dtype=np.float32)
        b = np.linspace(1.6, 0.1, 16, dtype=np.float32)
        expected = scalar_cosine(a.tolist(), b.tolist())
        actual = _vector_cosine(a, b)
        aligned = allocate_aligned(16)
        aligned[:] = a
        if aligned.ctypes.data % ALIGNMENT_BYTES:
            return False
        return math.isclose(actual, expected, rel_tol=1e-5, abs_tol=1e-6)
    except (ValueError, TypeError, FloatingPointError, MemoryError) as exc:
        logger.warning("Vectorized similarity unavailable: %s", exc)
        return False


class VectorMath:
    """Cosine similarity, batch similarity and similarity matrices."""

    def __init__(self, enable_simd: bool = True) -> None:
        self.simd_enabled = bool(enable_simd) and probe_simd_support()
        self.pool = AlignedBufferPool()
        if enable_simd and not self.simd_enabled:
            logger.info("Falling back to scalar similarity math")

    def cosine_similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        _check_lengths(len(a), len(b))
        if self.simd_enabled:
            try:
                return _vector_cosine(np.asarray(a, dtype=np.float32), np.asarray(b, dtype=np.float32))
            except (ValueError, TypeError, FloatingPointError) as exc:
                self._disable(exc)
        return scalar_cosine(a, b)

    def batch_similarity(self, vectors: Sequence[Sequence[float]], query: Sequence[float]) -> list[float]:
        """Cosine of ``query`` against every row of ``vectors``."""
        if not vectors:
            return []
        for vector in vectors:
            _check_lengths(len(vector), len(query))
        if self.simd_enabled:
            try:
                matrix = self._similarities(np.asarray(vectors, dtype=np.float32), np.asarray([query], dtype=np.float32))
                return [float(value) for value in matrix[:, 0]]
            except (ValueError, TypeError, FloatingPointError) as exc:
                self._disable(exc)
        return [scalar_cosine(vector, query) for vector in vectors]

    def similarity_matrix(
        self,
        vectors_a: Sequence[Sequence[float]],
        vectors_b: Sequence[Sequence[float]],
    ) -> list[list[float]]:
        if not vectors_a or not vectors_b:
            return []
        dim = len(vectors_a[0])
        for vector in list(vectors_a) + list(vectors_b):
            _check_lengths(len(vector), dim)
        if self.simd_enabled:
            try:
                matrix = self._similarities(np.asarray(vectors_a, dtype=np.float32), np.asarray(vectors_b, dtype=np.float32))
                return matrix.tolist()
            except (ValueError, TypeError, FloatingPointError) as exc:
                self._disable(exc)
        return [[scalar_cosine(a, b) for b in vectors_b] for a in vectors_a]

    def _similarities(self, left: np.ndarray, right: np.ndarray) -> np.ndarray:
        rows, cols = left.shape[0], right.shape[0]
        left_unit = _unit_rows(left)
        right_unit = _unit_rows(right)
        buffer = self.pool.acquire(rows * cols)
        try:
            out = buffer.data[: rows * cols].reshape(rows, cols)
            np.matmul(left_unit, right_unit.T, out=out)
            return out.copy()
        finally:
            self.pool.release(buffer)

    def _disable(self, exc: Exception) -> None:
        logger.warning("Vectorized similarity failed, switching to scalar path: %s", exc)
        self.simd_enabled = False


def scalar_cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    denom = math.sqrt(norm_a) * math.sqrt(norm_b)
    return dot / denom if denom > 0 else 0.0


def _vector_cosine(a: np.ndarray, b: np.ndarray) -> float:
    denom = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if denom == 0:
        return 0.0
    return float(np.dot(a, b)) / denom


def _unit_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    safe = np.where(norms == 0, 1.0, norms)
    return (matrix / safe).astype(np.float32, copy=False)


def _check_lengths(left: int, right: int) -> None:
    if left != right:
        raise ValueError(f"Vector length mismatch: {left} != {right}")


__all__ = ["VectorMath", "AlignedBufferPool", "AlignedBuffer", "allocate_aligned", "probe_simd_support", "scalar_cosine"]
