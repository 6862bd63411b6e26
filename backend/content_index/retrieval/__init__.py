"""Vector retrieval package."""

from .registry import VectorIndexRegistry
from .vector_index import SearchResult, VectorDocument, VectorIndex, VectorIndexConfig

__all__ = ["VectorIndex", "VectorIndexConfig", "VectorDocument", "SearchResult", "VectorIndexRegistry"]
