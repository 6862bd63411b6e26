"""Model backends: where tokenizers and inference sessions come from."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import numpy as np
import onnxruntime as ort
import orjson

from content_index.cache.model_cache import ModelArtifactCache
from content_index.core.logging import get_logger
from content_index.embedding.models import ModelInfo, model_urls
from content_index.embedding.tokenizer import HFTokenizer, TokenizedText, WordTokenizer

logger = get_logger(__name__)


class TextTokenizer(Protocol):
    pad_id: int

    def encode(self, text: str) -> TokenizedText: ...


@dataclass(slots=True)
class SessionIO:
    name: str


@dataclass(slots=True)
class ModelArtifacts:
    tokenizer: TextTokenizer
    model_data: bytes


class ModelBackend:
    """Resolves a preset into a tokenizer and a session factory for the worker."""

    name = "base"

    async def load(self, info: ModelInfo, version: str, max_length: int) -> ModelArtifacts:
        raise NotImplementedError

    def create_session(self, model_data: bytes, num_threads: int) -> Any:
        raise NotImplementedError


class OnnxBackend(ModelBackend):
    """ONNX Runtime inference over artifacts fetched through the model cache."""

    name = "onnx"

    def __init__(self, model_cache: ModelArtifactCache) -> None:
        self.model_cache = model_cache

    async def load(self, info: ModelInfo, version: str, max_length: int) -> ModelArtifacts:
        urls = model_urls(info, version)
        tokenizer_data = await self.model_cache.fetch(urls["tokenizer"])
        model_data = await self.model_cache.fetch(urls["model"])
        logger.info(
            "Loaded model artifacts for %s",
            info.identifier,
            extra={"ctx_model_bytes": len(model_data), "ctx_version": version},
        )
        return ModelArtifacts(tokenizer=HFTokenizer.from_bytes(tokenizer_data, max_length), model_data=model_data)

    def create_session(self, model_data: bytes, num_threads: int) -> ort.InferenceSession:
        options = ort.SessionOptions()
        options.intra_op_num_threads = num_threads
        options.inter_op_num_threads = 1
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        return ort.InferenceSession(model_data, sess_options=options, providers=["CPUExecutionProvider"])


class HashedSession:
    """Session whose hidden states are one-hot rows of the hashed token ids.

    Mean pooling these rows yields the normalized bag-of-words histogram used
    by the offline hashed model.
    """

    def __init__(self, dimension: int) -> None:
        self.dimension = dimension

    def get_inputs(self) -> list[SessionIO]:
        return [SessionIO("input_ids"), SessionIO("attention_mask")]

    def get_outputs(self) -> list[SessionIO]:
        return [SessionIO("last_hidden_state")]

    def run(self, output_names: list[str] | None, feeds: dict[str, np.ndarray]) -> list[np.ndarray]:
        input_ids = feeds["input_ids"]
        batch, seq = input_ids.shape
        hidden = np.zeros((batch, seq, self.dimension), dtype=np.float32)
        rows, cols = np.indices((batch, seq))
        hidden[rows, cols, input_ids % self.dimension] = 1.0
        return [hidden]


class HashedBackend(ModelBackend):
    """Deterministic hashed embeddings that need no download."""

    name = "hashed"

    async def load(self, info: ModelInfo, version: str, max_length: int) -> ModelArtifacts:
        model_data = orjson.dumps({"dimension": info.dimension})
        return ModelArtifacts(tokenizer=WordTokenizer(info.dimension, max_length), model_data=model_data)

    def create_session(self, model_data: bytes, num_threads: int) -> HashedSession:
        return HashedSession(int(orjson.loads(model_data)["dimension"]))


def create_backend(info: ModelInfo, model_cache: ModelArtifactCache | None) -> ModelBackend:
    if info.backend == "hashed":
        return HashedBackend()
    if model_cache is None:
        raise ValueError(f"Preset {info.preset} needs a model cache to download artifacts")
    return OnnxBackend(model_cache)


__all__ = [
    "ModelBackend",
    "ModelArtifacts",
    "OnnxBackend",
    "HashedBackend",
    "HashedSession",
    "SessionIO",
    "TextTokenizer",
    "create_backend",
]
