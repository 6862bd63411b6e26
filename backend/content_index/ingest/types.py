"""Common ingestion data structures."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class TextChunk:
    """Bounded slice of a page's text, ordered by position."""

    index: int
    text: str
    source_label: str

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "text": self.text, "sourceLabel": self.source_label}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TextChunk":
        return cls(index=int(data["index"]), text=str(data["text"]), source_label=str(data.get("sourceLabel", "")))


@dataclass(slots=True)
class IndexingOptions:
    max_chunks_per_page: int = 50
    skip_duplicates: bool = True


@dataclass(slots=True)
class IndexingOutcome:
    """Result of one ``index_content`` call."""

    source_id: str
    status: str
    chunks_total: int = 0
    chunks_indexed: int = 0
    chunks_failed: int = 0
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "status": self.status,
            "chunks_total": self.chunks_total,
            "chunks_indexed": self.chunks_indexed,
            "chunks_failed": self.chunks_failed,
            "detail": self.detail,
        }


@dataclass(slots=True)
class IndexerCounters:
    """Indexer-local counters reported alongside index stats."""

    chunks_queued: int = 0
    chunks_indexed: int = 0
    chunks_failed: int = 0
    pages_skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "chunks_queued": self.chunks_queued,
            "chunks_indexed": self.chunks_indexed,
            "chunks_failed": self.chunks_failed,
            "pages_skipped": self.pages_skipped,
        }


__all__ = ["TextChunk", "IndexingOptions", "IndexingOutcome", "IndexerCounters"]
