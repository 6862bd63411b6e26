"""Shared vector index handle bound to the active embedding dimension."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path

from content_index.core.logging import get_logger
from content_index.db.store import BlobStore
from content_index.retrieval.vector_index import (
    GRAPH_NAMESPACE,
    MAPPING_NAMESPACE,
    VectorIndex,
    VectorIndexConfig,
)

logger = get_logger(__name__)

# Graph file names used by earlier releases of the index.
LEGACY_INDEX_NAMES = ("tab_content_index.dat", "content_index.dat", "vector_index.dat")


class VectorIndexRegistry:
    """Hands out one :class:`VectorIndex` per process.

    An index is bound to a single dimension for its lifetime; asking for a
    different dimension clears the current index and builds a new one.
    """

    def __init__(self, store: BlobStore, base_config: VectorIndexConfig) -> None:
        self.store = store
        self.base_config = base_config
        self._current: VectorIndex | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> VectorIndex | None:
        return self._current

    async def acquire(self, dimension: int) -> VectorIndex:
        async with self._lock:
            current = self._current
            if current is not None and current.dimension == dimension:
                await current.initialize()
                return current
            if current is not None:
                logger.info(
                    "Vector dimension changed from %s to %s, rebuilding index",
                    current.dimension,
                    dimension,
                )
                try:
                    await current.clear()
                except Exception:
                    logger.exception("Failed to clear index for dimension %s", current.dimension)
                self._current = None
            index = VectorIndex(self.store, replace(self.base_config, dimension=dimension))
            await index.initialize()
            self._current = index
            return index

    def reset(self) -> None:
        self._current = None

    async def clear_all_vector_data(self) -> None:
        """Remove every graph and mapping blob and the graph files the index wrote.

        Only files named after a stored graph, the configured index or a legacy
        index name are deleted; anything else in ``data_dir`` is left alone.
        """
        async with self._lock:
            current, self._current = self._current, None
            if current is not None:
                try:
                    await current.clear()
                except Exception:
                    logger.exception("Failed to clear active vector index")
            try:
                stored_names = await self.store.keys(GRAPH_NAMESPACE)
            except Exception:
                logger.exception("Failed to list stored graph names")
                stored_names = []
            names = {self.base_config.index_name, *LEGACY_INDEX_NAMES, *stored_names}
            if current is not None:
                names.add(current.config.index_name)
            for namespace in (GRAPH_NAMESPACE, MAPPING_NAMESPACE):
                try:
                    removed = await self.store.delete_namespace(namespace)
                    logger.info("Removed %s %s blobs", removed, namespace)
                except Exception:
                    logger.exception("Failed to remove %s blobs", namespace)
            data_dir = self.base_config.data_dir.expanduser()
            try:
                await asyncio.to_thread(_remove_graph_files, data_dir, names)
            except OSError:
                logger.exception("Failed to remove graph files under %s", data_dir)


def _remove_graph_files(data_dir: Path, names: set[str]) -> None:
    """Delete the graph files written under ``names`` and their temp siblings."""
    for name in names:
        if Path(name).name != name:
            continue
        for path in (data_dir / name, data_dir / f"{name}.tmp"):
            if path.is_file():
                path.unlink(missing_ok=True)


__all__ = ["VectorIndexRegistry"]
