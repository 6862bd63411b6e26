"""Prometheus metrics instrumentation."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

REGISTRY = CollectorRegistry()

EMBED_REQUESTS = Counter(
    "cidx_embed_requests_total",
    "Embedding requests by outcome",
    labelnames=("outcome",),
    registry=REGISTRY,
)

EMBED_LATENCY = Histogram(
    "cidx_embed_latency_seconds",
    "Latency of worker inference round-trips",
    registry=REGISTRY,
)

EMBED_CACHE = Counter(
    "cidx_embed_cache_total",
    "Embedding cache lookups",
    labelnames=("result",),
    registry=REGISTRY,
)

INDEX_DOCUMENTS = Gauge(
    "cidx_index_documents",
    "Live documents in the vector index",
    labelnames=("index",),
    registry=REGISTRY,
)

INDEX_EVICTIONS = Counter(
    "cidx_index_evictions_total",
    "Documents evicted from the vector index",
    labelnames=("policy",),
    registry=REGISTRY,
)

MODEL_CACHE_BYTES = Gauge(
    "cidx_model_cache_bytes",
    "Bytes held by the model artifact cache",
    registry=REGISTRY,
)

MODEL_DOWNLOADS = Counter(
    "cidx_model_downloads_total",
    "Model artifact downloads by outcome",
    labelnames=("outcome",),
    registry=REGISTRY,
)

INDEXED_CHUNKS = Counter(
    "cidx_indexed_chunks_total",
    "Chunks processed by the content indexer",
    labelnames=("outcome",),
    registry=REGISTRY,
)


def metrics_text() -> str:
    """Render the registry in the Prometheus text exposition format."""
    return generate_latest(REGISTRY).decode("utf-8")


__all__ = [
    "REGISTRY",
    "EMBED_REQUESTS",
    "EMBED_LATENCY",
    "EMBED_CACHE",
    "INDEX_DOCUMENTS",
    "INDEX_EVICTIONS",
    "MODEL_CACHE_BYTES",
    "MODEL_DOWNLOADS",
    "INDEXED_CHUNKS",
    "metrics_text",
]
