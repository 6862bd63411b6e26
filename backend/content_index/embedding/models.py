"""Embedding model presets."""

from __future__ import annotations

from dataclasses import dataclass

HF_BASE_URL = "https://huggingface.co"
DEFAULT_PRESET = "multilingual-e5-small"


@dataclass(frozen=True, slots=True)
class ModelInfo:
    preset: str
    identifier: str
    dimension: int
    backend: str
    description: str
    size: str
    requires_token_type_ids: bool = False


PREDEFINED_MODELS: dict[str, ModelInfo] = {
    "multilingual-e5-small": ModelInfo(
        preset="multilingual-e5-small",
        identifier="Xenova/multilingual-e5-small",
        dimension=384,
        backend="onnx",
        description="Multilingual E5 Small, lightweight model supporting 100+ languages",
        size="116MB",
    ),
    "multilingual-e5-base": ModelInfo(
        preset="multilingual-e5-base",
        identifier="Xenova/multilingual-e5-base",
        dimension=768,
        backend="onnx",
        description="Multilingual E5 Base, medium-scale model supporting 100+ languages",
        size="279MB",
    ),
    "hashed-384": ModelInfo(
        preset="hashed-384",
        identifier="hashed-384",
        dimension=384,
        backend="hashed",
        description="Deterministic hashed bag-of-words model, no download required",
        size="0MB",
    ),
    "hashed-768": ModelInfo(
        preset="hashed-768",
        identifier="hashed-768",
        dimension=768,
        backend="hashed",
        description="Wider hashed bag-of-words model, no download required",
        size="0MB",
    ),
}


def get_model_info(preset: str) -> ModelInfo:
    try:
        return PREDEFINED_MODELS[preset]
    except KeyError:
        raise ValueError(f"Unknown model preset: {preset}") from None


def list_available_models() -> list[ModelInfo]:
    return list(PREDEFINED_MODELS.values())


def recommend_model_for_language(language: str = "multilingual", task: str = "search") -> str:
    """Pick a preset for a language; only the multilingual E5 family is offered."""
    if task in ("classification", "clustering") or language not in ("en", "zh", "multilingual"):
        return "multilingual-e5-base"
    return "multilingual-e5-small"


def recommend_model_for_device(memory_gb: float, prefer_speed: bool = True) -> str:
    if memory_gb < 4 or prefer_speed:
        return "multilingual-e5-small"
    return "multilingual-e5-base"


def onnx_file_for_version(version: str = "quantized") -> str:
    """ONNX file for a model version; every version currently ships the quantized graph."""
    return "model_quantized.onnx"


def model_urls(info: ModelInfo, version: str = "quantized") -> dict[str, str]:
    """Remote artifact URLs for a preset: the ONNX graph and the tokenizer definition."""
    base = f"{HF_BASE_URL}/{info.identifier}/resolve/main"
    return {
        "model": f"{base}/onnx/{onnx_file_for_version(version)}",
        "tokenizer": f"{base}/tokenizer.json",
    }


__all__ = [
    "ModelInfo",
    "PREDEFINED_MODELS",
    "DEFAULT_PRESET",
    "get_model_info",
    "list_available_models",
    "recommend_model_for_language",
    "recommend_model_for_device",
    "onnx_file_for_version",
    "model_urls",
]
