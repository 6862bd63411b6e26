"""Error taxonomy shared across the content index."""

from __future__ import annotations


class ContentIndexError(Exception):
    """Base class for content index failures."""


class VectorValidationError(ContentIndexError, ValueError):
    """Embedding has the wrong dimension or non-finite components."""


class NotReadyError(ContentIndexError):
    """A component was used before it finished initializing."""


class EngineNotInitializedError(NotReadyError):
    """The embedding engine has not been initialized."""


class TransientIOError(ContentIndexError):
    """Storage, messaging or download failure that survived bounded retries."""


class ModelFetchError(TransientIOError):
    """A model artifact could not be downloaded."""


class WorkerError(ContentIndexError):
    """An inference request failed inside the worker."""


class EngineConstructionError(ContentIndexError):
    """A new embedding engine could not be built."""


def classify_error(message: str) -> str:
    """Bucket an error message into ``network``, ``file`` or ``unknown``."""
    lowered = message.lower()
    if any(word in lowered for word in ("network", "fetch", "timeout", "connection", "download")):
        return "network"
    if any(word in lowered for word in ("corrupt", "invalid", "format", "parse", "decode", "onnx")):
        return "file"
    return "unknown"


__all__ = [
    "ContentIndexError",
    "VectorValidationError",
    "NotReadyError",
    "EngineNotInitializedError",
    "TransientIOError",
    "ModelFetchError",
    "WorkerError",
    "EngineConstructionError",
    "classify_error",
]
