"""Shared engine host and the delegating proxy used by its consumers."""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Callable, Sequence

import numpy as np

from content_index.core.errors import (
    ContentIndexError,
    EngineNotInitializedError,
    TransientIOError,
    WorkerError,
)
from content_index.core.logging import get_logger
from content_index.embedding.engine import EmbeddingEngine, EngineConfig
from content_index.utils.ids import CorrelationCounter

logger = get_logger(__name__)

MAX_RETRIES = 3
RETRY_BACKOFF_SECONDS = 0.1

EngineFactory = Callable[[EngineConfig], EmbeddingEngine]


class HostRequestKind(enum.Enum):
    INIT = "init"
    STATUS = "status"
    EMBED = "embed"
    EMBED_BATCH = "embed_batch"
    SIMILARITY_BATCH = "similarity_batch"
    DISPOSE = "dispose"


class HostErrorKind(enum.Enum):
    NOT_INITIALIZED = "not_initialized"
    FAILED = "failed"


@dataclass(slots=True)
class HostRequest:
    id: int
    kind: HostRequestKind
    payload: Any = None


@dataclass(slots=True)
class HostResponse:
    id: int
    ok: bool
    payload: Any = None
    error: str | None = None
    error_kind: HostErrorKind | None = None


class EngineHost:
    """Owns the one shared :class:`EmbeddingEngine` of a process.

    Consumers never touch the engine directly; they post :class:`HostRequest`
    messages and await the :class:`HostResponse` carrying the same id. An INIT
    whose config key matches the running engine is a no-op; a different key
    disposes the old engine before building the new one.
    """

    def __init__(self, engine_factory: EngineFactory) -> None:
        self._engine_factory = engine_factory
        self._engine: EmbeddingEngine | None = None
        self._inbox: asyncio.Queue[HostRequest | None] | None = None
        self._pending: dict[int, asyncio.Future[HostResponse]] = {}
        self._dispatcher: asyncio.Task[None] | None = None
        self._handlers_running: set[asyncio.Task[None]] = set()
        self._init_lock = asyncio.Lock()
        self._ids = CorrelationCounter()
        self._handlers: dict[HostRequestKind, Callable[[Any], Any]] = {
            HostRequestKind.INIT: self._handle_init,
            HostRequestKind.STATUS: self._handle_status,
            HostRequestKind.EMBED: self._handle_embed,
            HostRequestKind.EMBED_BATCH: self._handle_embed_batch,
            HostRequestKind.SIMILARITY_BATCH: self._handle_similarity_batch,
            HostRequestKind.DISPOSE: self._handle_dispose,
        }
        missing = set(HostRequestKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"Unhandled host request kinds: {sorted(k.value for k in missing)}")

    @property
    def engine(self) -> EmbeddingEngine | None:
        return self._engine

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._inbox = asyncio.Queue()
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="engine-host")

    async def request(self, kind: HostRequestKind, payload: Any = None) -> HostResponse:
        if not self.is_running:
            self.start()
        inbox = self._inbox
        if inbox is None:
            raise TransientIOError("Engine host is not running")
        request = HostRequest(id=self._ids.next(), kind=kind, payload=payload)
        future: asyncio.Future[HostResponse] = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future
        await inbox.put(request)
        try:
            return await future
        finally:
            self._pending.pop(request.id, None)

    async def reset(self) -> None:
        """Drop the hosted engine, as if the isolated context had been recreated."""
        engine, self._engine = self._engine, None
        if engine is not None:
            await engine.dispose()

    async def close(self) -> None:
        await self.reset()
        if self._dispatcher is not None and self._inbox is not None:
            await self._inbox.put(None)
            await self._dispatcher
        self._dispatcher = None
        for task in list(self._handlers_running):
            task.cancel()
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransientIOError("Engine host closed"))

    async def _dispatch_loop(self) -> None:
        inbox = self._inbox
        if inbox is None:
            return
        while True:
            request = await inbox.get()
            if request is None:
                break
            task = asyncio.create_task(self._handle(request))
            self._handlers_running.add(task)
            task.add_done_callback(self._handlers_running.discard)

    async def _handle(self, request: HostRequest) -> None:
        handler = self._handlers[request.kind]
        try:
            payload = await handler(request.payload)
            response = HostResponse(request.id, ok=True, payload=payload)
        except EngineNotInitializedError as exc:
            response = HostResponse(request.id, ok=False, error=str(exc), error_kind=HostErrorKind.NOT_INITIALIZED)
        except Exception as exc:
            logger.exception("Engine host request %s (%s) failed", request.id, request.kind.value)
            response = HostResponse(request.id, ok=False, error=str(exc), error_kind=HostErrorKind.FAILED)
        future = self._pending.get(request.id)
        if future is not None and not future.done():
            future.set_result(response)

    def _ready_engine(self) -> EmbeddingEngine:
        if self._engine is None or not self._engine.is_initialized:
            raise EngineNotInitializedError("Shared embedding engine is not initialized")
        return self._engine

    async def _handle_init(self, config: EngineConfig) -> dict[str, Any]:
        async with self._init_lock:
            current = self._engine
            if current is not None and current.config.key() == config.key():
                await current.initialize()
                return {"reused": True}
            if current is not None:
                logger.info("Replacing shared engine %s with %s", current.config.model_preset, config.model_preset)
                self._engine = None
                try:
                    await current.dispose()
                except Exception:
                    logger.exception("Failed to dispose previous engine")
            engine = self._engine_factory(config)
            await engine.initialize()
            self._engine = engine
            return {"reused": False}

    async def _handle_status(self, _payload: Any) -> dict[str, Any]:
        engine = self._engine
        return {
            "is_initialized": engine is not None and engine.is_initialized,
            "model_preset": engine.config.model_preset if engine else None,
            "dimension": engine.dimension if engine else None,
        }

    async def _handle_embed(self, text: str) -> np.ndarray:
        return await self._ready_engine().get_embedding(text)

    async def _handle_embed_batch(self, texts: Sequence[str]) -> list[np.ndarray]:
        return await self._ready_engine().get_embeddings_batch(texts)

    async def _handle_similarity_batch(self, pairs: Sequence[tuple[str, str]]) -> list[float]:
        return await self._ready_engine().compute_similarity_batch(pairs)

    async def _handle_dispose(self, _payload: Any) -> None:
        await self.reset()


class EngineProxy:
    """Engine-shaped facade that delegates to an :class:`EngineHost`.

    When the host answers "not initialized" the proxy re-sends INIT with its
    own config and retries, up to ``MAX_RETRIES`` attempts with a linear
    backoff of ``RETRY_BACKOFF_SECONDS * attempt`` between them.
    """

    def __init__(self, host: EngineHost, config: EngineConfig) -> None:
        self.host = host
        self.config = config
        self._initialized = False
        self._init_task: asyncio.Task[None] | None = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_initializing(self) -> bool:
        return self._init_task is not None and not self._init_task.done()

    @property
    def dimension(self) -> int:
        return self.config.dimension

    async def initialize(self) -> None:
        if self._initialized:
            return
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.create_task(self._do_initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def get_embedding(self, text: str) -> np.ndarray:
        return await self._call(HostRequestKind.EMBED, text)

    async def get_embeddings_batch(self, texts: Sequence[str]) -> list[np.ndarray]:
        if not texts:
            return []
        return await self._call(HostRequestKind.EMBED_BATCH, list(texts))

    async def compute_similarity(self, text_a: str, text_b: str) -> float:
        result = await self.compute_similarity_batch([(text_a, text_b)])
        return result[0]

    async def compute_similarity_batch(self, pairs: Sequence[tuple[str, str]]) -> list[float]:
        if not pairs:
            return []
        return await self._call(HostRequestKind.SIMILARITY_BATCH, list(pairs))

    async def get_status(self) -> dict[str, Any]:
        response = await self.host.request(HostRequestKind.STATUS)
        if not response.ok:
            raise WorkerError(response.error or "Engine status request failed")
        return response.payload

    async def dispose(self) -> None:
        """Forget local readiness; the shared engine stays with the host."""
        self._initialized = False

    async def _do_initialize(self) -> None:
        response = await self.host.request(HostRequestKind.INIT, self.config)
        if not response.ok:
            raise ContentIndexError(f"Engine initialization failed: {response.error}")
        self._initialized = True

    async def _call(self, kind: HostRequestKind, payload: Any) -> Any:
        last_error: str | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            if not self._initialized:
                await self.initialize()
            try:
                response = await self.host.request(kind, payload)
            except TransientIOError as exc:
                last_error = str(exc)
                logger.warning("Engine host request %s failed (attempt %s): %s", kind.value, attempt, exc)
            else:
                if response.ok:
                    return response.payload
                if response.error_kind is not HostErrorKind.NOT_INITIALIZED:
                    raise WorkerError(response.error or f"Engine request {kind.value} failed")
                last_error = response.error
                self._initialized = False
                logger.info("Shared engine not initialized, re-initializing (attempt %s)", attempt)
            if attempt < MAX_RETRIES:
                await asyncio.sleep(RETRY_BACKOFF_SECONDS * attempt)
        raise EngineNotInitializedError(
            f"Engine request {kind.value} failed after {MAX_RETRIES} attempts: {last_error}"
        )


__all__ = [
    "EngineHost",
    "EngineProxy",
    "HostRequest",
    "HostResponse",
    "HostRequestKind",
    "HostErrorKind",
    "MAX_RETRIES",
    "RETRY_BACKOFF_SECONDS",
]
