"""Application wiring for the content index."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

import orjson

from content_index.cache.model_cache import ModelArtifactCache
from content_index.core.config import Settings, get_settings
from content_index.core.errors import ContentIndexError, classify_error
from content_index.core.logging import get_logger
from content_index.db.sqlite import SQLiteDatabase
from content_index.db.store import BlobStore
from content_index.embedding.backends import ModelBackend
from content_index.embedding.engine import EmbeddingEngine, EngineConfig
from content_index.embedding.host import EngineHost, EngineProxy, HostRequestKind
from content_index.embedding.models import ModelInfo, get_model_info
from content_index.ingest.chunker import TextChunker
from content_index.ingest.indexer import ContentIndexer, Engine
from content_index.ingest.types import IndexingOptions, IndexingOutcome
from content_index.retrieval import SearchResult, VectorIndexConfig, VectorIndexRegistry
from content_index.utils.time import now_ms

logger = get_logger(__name__)

PREFS_NAMESPACE = "prefs"
MODEL_SELECTION_KEY = "model_selection"

BackendFactory = Callable[[ModelInfo], ModelBackend]


@dataclass(slots=True)
class ModelStatus:
    status: str = "idle"
    progress: int = 0
    error_message: str = ""
    error_type: str = ""
    last_updated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "progress": self.progress,
            "error_message": self.error_message,
            "error_type": self.error_type,
            "last_updated": self.last_updated,
        }


class ContentIndexApp:
    """Builds every long-lived handle once and hands them to their consumers."""

    def __init__(self, settings: Settings, backend_factory: BackendFactory | None = None) -> None:
        self.settings = settings
        self._backend_factory = backend_factory
        self.db = SQLiteDatabase(settings.db_path)
        self.db.ensure_schema()
        self.store = BlobStore(self.db)
        self.model_cache = ModelArtifactCache(
            self.db,
            max_bytes=settings.model_cache_max_bytes,
            retention_days=settings.model_cache_retention_days,
            download_timeout=settings.download_timeout,
            download_retries=settings.download_retries,
        )
        self.host = EngineHost(self._build_engine)
        self.registry = VectorIndexRegistry(self.store, VectorIndexConfig.from_settings(settings))
        self.indexer = ContentIndexer(
            self._create_engine_handle,
            self.registry,
            chunker=TextChunker(
                max_tokens=settings.chunk_max_tokens,
                min_tokens=settings.chunk_min_tokens,
                overlap_tokens=settings.chunk_overlap_tokens,
            ),
            options=IndexingOptions(
                max_chunks_per_page=settings.max_chunks_per_page,
                skip_duplicates=settings.skip_duplicates,
            ),
        )
        self.model_status = ModelStatus(last_updated=now_ms())
        self._selection_loaded = False

    def engine_config(self) -> EngineConfig:
        return EngineConfig.from_settings(self.settings)

    async def initialize(self) -> None:
        await self.load_model_selection()
        self._set_status("initializing")
        try:
            await self.indexer.initialize()
        except Exception as exc:
            self._set_error(exc)
            raise
        self._set_status("ready", progress=100)

    async def initialize_if_cached(self) -> bool:
        """Start the engine only when no download would be needed."""
        await self.load_model_selection()
        info = get_model_info(self.settings.model_preset)
        if info.backend != "hashed" and not await self.model_cache.has_any_valid_cache():
            logger.info("No cached model artifacts for %s, deferring initialization", info.preset)
            return False
        await self.initialize()
        return True

    async def switch_model(
        self,
        preset: str,
        version: str = "quantized",
        dimension: int | None = None,
        previous_dimension: int | None = None,
    ) -> dict[str, Any]:
        """Move the engine and index to another model; reports failures instead of raising."""
        try:
            info = get_model_info(preset)
            if dimension is not None and dimension != info.dimension:
                raise ValueError(f"Preset {preset} produces {info.dimension}-d vectors, not {dimension}")
            if previous_dimension is None:
                previous_dimension = get_model_info(self.settings.model_preset).dimension

            self._set_status("downloading")
            self.settings.model_preset = preset
            self.settings.model_version = version
            await self._save_model_selection()

            self._set_status("initializing")
            if self.settings.use_delegation:
                response = await self.host.request(HostRequestKind.INIT, self.engine_config())
                if not response.ok:
                    raise ContentIndexError(f"Engine initialization failed: {response.error}")

            if info.dimension != previous_dimension:
                logger.info("Model dimension changed from %s to %s", previous_dimension, info.dimension)
                await self.indexer.reinitialize()
            elif self.indexer.is_initialized:
                await self.indexer.rebind_engine()
            else:
                await self.indexer.initialize()
        except Exception as exc:
            logger.exception("Failed to switch model to %s", preset)
            self._set_error(exc)
            return {"success": False, "error": str(exc)}
        self._set_status("ready", progress=100)
        logger.info("Switched model", extra={"ctx_preset": preset, "ctx_version": version})
        return {"success": True}

    async def index_content(self, source_id: str | int, url: str, title: str, text: str) -> IndexingOutcome:
        return await self.indexer.index_content(source_id, url, title, text)

    async def search(self, query: str, top_k: int = 10) -> list[SearchResult]:
        return await self.indexer.search(query, top_k)

    async def remove_source(self, source_id: str | int) -> int:
        return await self.indexer.remove_source(source_id)

    async def clear_all(self) -> None:
        await self.indexer.clear_all()

    def get_stats(self) -> dict[str, Any]:
        stats = self.indexer.get_stats()
        stats["model"] = {
            "preset": self.settings.model_preset,
            "version": self.settings.model_version,
            **self.model_status.to_dict(),
        }
        return stats

    async def load_model_selection(self) -> None:
        if self._selection_loaded:
            return
        self._selection_loaded = True
        raw = await self.store.get(PREFS_NAMESPACE, MODEL_SELECTION_KEY)
        if raw is None:
            return
        try:
            selection = orjson.loads(raw)
            get_model_info(selection["preset"])
            self.settings.model_preset = selection["preset"]
            self.settings.model_version = selection.get("version", self.settings.model_version)
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring unreadable stored model selection")

    async def close(self) -> None:
        await self.indexer.close()
        await self.host.close()
        self.db.close()

    # Internal helpers -------------------------------------------------

    def _build_engine(self, config: EngineConfig) -> EmbeddingEngine:
        backend = self._backend_factory(config.info) if self._backend_factory else None
        return EmbeddingEngine(config, model_cache=self.model_cache, backend=backend)

    def _create_engine_handle(self) -> Engine:
        config = self.engine_config()
        if self.settings.use_delegation:
            return EngineProxy(self.host, config)
        return self._build_engine(config)

    async def _save_model_selection(self) -> None:
        payload = {"preset": self.settings.model_preset, "version": self.settings.model_version}
        await self.store.put(PREFS_NAMESPACE, MODEL_SELECTION_KEY, orjson.dumps(payload))
        self._selection_loaded = True

    def _set_status(self, status: str, progress: int = 0) -> None:
        self.model_status = ModelStatus(status=status, progress=progress, last_updated=now_ms())

    def _set_error(self, exc: Exception) -> None:
        message = str(exc)
        self.model_status = ModelStatus(
            status="error",
            error_message=message,
            error_type=classify_error(message),
            last_updated=now_ms(),
        )


def create_app(settings: Settings | None = None, backend_factory: BackendFactory | None = None) -> ContentIndexApp:
    return ContentIndexApp(settings or get_settings(), backend_factory=backend_factory)


__all__ = ["ContentIndexApp", "ModelStatus", "create_app"]
