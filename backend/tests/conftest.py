"""Test fixtures for the content index."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from content_index.embedding.backends import HashedBackend, ModelArtifacts  # noqa: E402
from content_index.embedding.models import ModelInfo  # noqa: E402
from content_index.embedding.tokenizer import TokenizedText  # noqa: E402

# Concept ids for ConceptTokenizer; each word maps onto one embedding axis.
FELINE, NIGHT, CANINE, HOME = 1, 2, 3, 4
CONCEPTS = {
    "cat": FELINE,
    "cats": FELINE,
    "feline": FELINE,
    "kitten": FELINE,
    "night": NIGHT,
    "nocturnal": NIGHT,
    "dog": CANINE,
    "dogs": CANINE,
    "bark": CANINE,
    "mat": HOME,
    "house": HOME,
}


class ConceptTokenizer:
    """Maps known words to fixed concept ids and drops everything else."""

    pad_id = 0

    def encode(self, text: str) -> TokenizedText:
        words = [word.strip(".,!?;:").lower() for word in text.split()]
        ids = [CONCEPTS[word] for word in words if word in CONCEPTS]
        return TokenizedText(input_ids=ids, attention_mask=[1] * len(ids), token_type_ids=[0] * len(ids))


class ConceptBackend(HashedBackend):
    """Hashed session fed by concept ids, so embeddings are predictable concept mixes."""

    name = "concept"

    async def load(self, info: ModelInfo, version: str, max_length: int) -> ModelArtifacts:
        artifacts = await super().load(info, version, max_length)
        return ModelArtifacts(tokenizer=ConceptTokenizer(), model_data=artifacts.model_data)


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Point storage at a temp dir and reset cached settings between tests."""
    monkeypatch.setenv("CIDX_DB_PATH", str(tmp_path / "cidx.db"))
    monkeypatch.setenv("CIDX_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("CIDX_CONFIG", raising=False)
    monkeypatch.delenv("CIDX_MODEL_PRESET", raising=False)

    from content_index.core.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def database(tmp_path: Path):
    from content_index.db.sqlite import SQLiteDatabase

    db = SQLiteDatabase(tmp_path / "store.db")
    db.ensure_schema()
    yield db
    db.close()


@pytest.fixture()
def store(database):
    from content_index.db.store import BlobStore

    return BlobStore(database)


@pytest.fixture()
def concept_backend_factory() -> Callable[[ModelInfo], ConceptBackend]:
    return lambda info: ConceptBackend()


@pytest.fixture(scope="session")
def sample_text() -> str:
    return "The cat sat on the mat.\n\nCats are nocturnal animals.\n\nDogs bark loudly."
