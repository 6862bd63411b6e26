"""Tests for application wiring and model switching."""

from __future__ import annotations

from pathlib import Path

import pytest

from content_index.app import ContentIndexApp, create_app
from content_index.core.config import Settings
from content_index.core.errors import NotReadyError


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = {
        "db_path": tmp_path / "app.db",
        "data_dir": tmp_path / "data",
        "model_preset": "hashed-384",
        "chunk_max_tokens": 6,
        "chunk_min_tokens": 1,
        "chunk_overlap_tokens": 0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.mark.asyncio
@pytest.mark.parametrize("use_delegation", [True, False])
async def test_index_and_search(tmp_path: Path, sample_text: str, concept_backend_factory, use_delegation: bool) -> None:
    app = create_app(make_settings(tmp_path, use_delegation=use_delegation), concept_backend_factory)
    try:
        assert await app.initialize_if_cached()
        outcome = await app.index_content("5", "https://example.com", "Pets", sample_text)
        assert outcome.chunks_indexed == 3
        results = await app.search("nocturnal feline", top_k=1)
        assert results[0].document.chunk.text == "Cats are nocturnal animals."
        assert app.get_stats()["model"]["status"] == "ready"
    finally:
        await app.close()


@pytest.mark.asyncio
async def test_switch_to_wider_model_rebuilds_and_persists(tmp_path: Path, sample_text: str, concept_backend_factory) -> None:
    settings = make_settings(tmp_path)
    app = ContentIndexApp(settings, concept_backend_factory)
    try:
        await app.initialize()
        await app.index_content("5", "https://example.com", "Pets", sample_text)
        result = await app.switch_model("hashed-768", dimension=768, previous_dimension=384)
        assert result == {"success": True}
        stats = app.get_stats()
        assert stats["total_documents"] == 0
        assert stats["dimension"] == 768
        assert app.host.engine.dimension == 768
        assert (await app.index_content("5", "https://example.com", "Pets", sample_text)).chunks_indexed == 3
    finally:
        await app.close()

    reopened = ContentIndexApp(make_settings(tmp_path), concept_backend_factory)
    try:
        await reopened.load_model_selection()
        assert reopened.settings.model_preset == "hashed-768"
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_switch_same_dimension_keeps_documents(tmp_path: Path, sample_text: str, concept_backend_factory) -> None:
    app = create_app(make_settings(tmp_path, use_delegation=False), concept_backend_factory)
    try:
        await app.initialize()
        await app.index_content("5", "https://example.com", "Pets", sample_text)
        first_engine = app.indexer.engine
        assert (await app.switch_model("hashed-384", version="full"))["success"]
        assert app.indexer.engine is not first_engine
        assert not first_engine.is_initialized
        assert app.get_stats()["total_documents"] == 3
    finally:
        await app.close()


@pytest.mark.asyncio
async def test_switch_failure_is_reported(tmp_path: Path, concept_backend_factory) -> None:
    app = create_app(make_settings(tmp_path), concept_backend_factory)
    try:
        result = await app.switch_model("no-such-model")
        assert result["success"] is False
        assert "no-such-model" in result["error"]
        assert app.model_status.status == "error"
        mismatch = await app.switch_model("hashed-768", dimension=384)
        assert mismatch["success"] is False
    finally:
        await app.close()


@pytest.mark.asyncio
async def test_initialize_if_cached_waits_for_download(tmp_path: Path) -> None:
    app = create_app(make_settings(tmp_path, model_preset="multilingual-e5-small"))
    try:
        assert await app.initialize_if_cached() is False
        assert not app.indexer.is_initialized
        with pytest.raises(NotReadyError):
            await app.search("anything")
    finally:
        await app.close()
