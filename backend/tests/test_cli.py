"""CLI smoke tests."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from content_index.cli.main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def offline_model(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CIDX_MODEL_PRESET", "hashed-384")


def invoke(*args: str) -> object:
    result = runner.invoke(app, list(args))
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def test_index_search_remove(tmp_path: Path) -> None:
    page = tmp_path / "page.txt"
    page.write_text("Vector search finds related browser tabs quickly.", encoding="utf-8")

    outcome = invoke("index", str(page), "--source", "42", "--url", "https://example.com/tabs", "--title", "Tabs")
    assert outcome["status"] == "indexed"
    assert outcome["chunks_indexed"] == 1

    results = invoke("search", "related browser tabs", "--k", "3")
    assert results[0]["document"]["sourceId"] == "42"
    assert results[0]["similarity"] > 0.5

    stats = invoke("stats")
    assert stats["total_documents"] == 1
    assert stats["model"]["preset"] == "hashed-384"

    assert invoke("remove", "42")["removed"] == 1
    assert invoke("search", "related browser tabs") == []


def test_switch_model_and_models_listing(tmp_path: Path) -> None:
    presets = {item["preset"] for item in invoke("models")}
    assert {"multilingual-e5-small", "multilingual-e5-base", "hashed-384"} <= presets
    assert invoke("switch-model", "hashed-768") == {"success": True}
    assert invoke("stats")["model"]["preset"] == "hashed-768"

    bad = runner.invoke(app, ["switch-model", "unknown"])
    assert bad.exit_code == 1


def test_cache_commands_and_metrics() -> None:
    stats = invoke("cache", "stats")
    assert stats["entry_count"] == 0
    assert invoke("cache", "cleanup") == {"removed": 0}
    assert invoke("cache", "clear") == {"status": "ok"}
    result = runner.invoke(app, ["metrics"])
    assert result.exit_code == 0
    assert "cidx_model_cache_bytes" in result.stdout
