"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "CIDX_"
DEFAULT_CONFIG_PATH = Path("~/.config/content-index/config.yaml")
MODEL_VERSIONS = ("full", "quantized", "compressed")

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "db_path"): "db_path",
    ("storage", "data_dir"): "data_dir",
    ("model", "preset"): "model_preset",
    ("model", "version"): "model_version",
    ("model", "max_length"): "max_length",
    ("model", "cache_size"): "embedding_cache_size",
    ("model", "concurrent_limit"): "concurrent_limit",
    ("model", "inference_threads"): "inference_threads",
    ("model", "use_delegation"): "use_delegation",
    ("model", "use_simd"): "use_simd",
    ("model_cache", "max_bytes"): "model_cache_max_bytes",
    ("model_cache", "retention_days"): "model_cache_retention_days",
    ("model_cache", "download_timeout"): "download_timeout",
    ("model_cache", "download_retries"): "download_retries",
    ("index", "name"): "index_name",
    ("index", "max_elements"): "max_elements",
    ("index", "ef_construction"): "ef_construction",
    ("index", "m"): "m",
    ("index", "ef_search"): "ef_search",
    ("index", "graph_sync_interval"): "graph_sync_interval",
    ("index", "auto_cleanup"): "auto_cleanup",
    ("index", "retention_days"): "retention_days",
    ("index", "capacity_evict_fraction"): "capacity_evict_fraction",
    ("indexer", "max_chunks_per_page"): "max_chunks_per_page",
    ("indexer", "skip_duplicates"): "skip_duplicates",
    ("chunker", "max_tokens"): "chunk_max_tokens",
    ("chunker", "min_tokens"): "chunk_min_tokens",
    ("chunker", "overlap_tokens"): "chunk_overlap_tokens",
}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    db_path: Path = Field(default=Path.home() / ".content-index" / "cidx.db")
    data_dir: Path = Field(default=Path.home() / ".content-index" / "data")

    model_preset: str = "multilingual-e5-small"
    model_version: str = "quantized"
    max_length: int = Field(default=256, gt=0)
    embedding_cache_size: int = Field(default=1000, ge=0)
    concurrent_limit: int | None = None
    inference_threads: int = Field(default=1, ge=1)
    use_delegation: bool = True
    use_simd: bool = True

    model_cache_max_bytes: int = Field(default=500 * 1024 * 1024, gt=0)
    model_cache_retention_days: float = Field(default=30, gt=0)
    download_timeout: float = Field(default=120.0, gt=0)
    download_retries: int = Field(default=3, ge=1)

    index_name: str = "tab_content_index.dat"
    max_elements: int = Field(default=100_000, gt=0)
    ef_construction: int = Field(default=200, gt=0)
    m: int = Field(default=48, gt=1)
    ef_search: int = Field(default=50, gt=0)
    graph_sync_interval: int = Field(default=10, ge=1)
    auto_cleanup: bool = True
    retention_days: float = Field(default=30, gt=0)
    capacity_evict_fraction: float = 0.2

    max_chunks_per_page: int = Field(default=50, gt=0)
    skip_duplicates: bool = True
    chunk_max_tokens: int = Field(default=120, gt=0)
    chunk_min_tokens: int = Field(default=20, ge=0)
    chunk_overlap_tokens: int = Field(default=20, ge=0)

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("db_path", "data_dir", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("paths must be a path or string")

    @field_validator("model_version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        if value not in MODEL_VERSIONS:
            raise ValueError(f"model_version must be one of {', '.join(MODEL_VERSIONS)}")
        return value

    @field_validator("capacity_evict_fraction")
    @classmethod
    def _check_fraction(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("capacity_evict_fraction must be in (0, 1]")
        return value

    @property
    def resolved_concurrent_limit(self) -> int:
        if self.concurrent_limit:
            return max(1, self.concurrent_limit)
        return max(1, (os.cpu_count() or 2) // 2)

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with CIDX_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor for dependency injection."""
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings", "MODEL_VERSIONS"]
