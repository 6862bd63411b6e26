"""ID helpers."""

from __future__ import annotations

import itertools


def document_id(source_id: str, chunk_index: int, timestamp_ms: int) -> str:
    """Identifier of one indexed chunk, e.g. ``tab_12_chunk_0_1700000000000``."""
    return f"tab_{source_id}_chunk_{chunk_index}_{timestamp_ms}"


class CorrelationCounter:
    """Monotonic integer ids for request/response matching."""

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)

    def next(self) -> int:
        return next(self._counter)


__all__ = ["document_id", "CorrelationCounter"]
