"""Inference worker thread and its asynchronous client."""

from __future__ import annotations

import asyncio
import enum
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

import numpy as np

from content_index.core.errors import WorkerError
from content_index.core.logging import get_logger
from content_index.core.metrics import EMBED_LATENCY, EMBED_REQUESTS
from content_index.utils.ids import CorrelationCounter

logger = get_logger(__name__)

SessionFactory = Callable[[bytes, int], Any]


class RequestKind(enum.Enum):
    INIT = "init"
    INFER = "infer"
    BATCH_INFER = "batch_infer"
    GET_STATS = "get_stats"
    CLEAR_BUFFERS = "clear_buffers"


class ResponseStatus(enum.Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(slots=True)
class InitPayload:
    model_data: bytes
    num_threads: int = 1


@dataclass(slots=True)
class InferPayload:
    """Flat int64 token arrays plus their ``(batch, seq)`` shape."""

    input_ids: np.ndarray
    attention_mask: np.ndarray
    token_type_ids: np.ndarray
    dims: tuple[int, int]


@dataclass(slots=True)
class InferResult:
    hidden_state: np.ndarray
    inference_ms: float


@dataclass(slots=True)
class WorkerRequest:
    id: int
    kind: RequestKind
    payload: Any = None


@dataclass(slots=True)
class WorkerResponse:
    id: int
    status: ResponseStatus
    payload: Any = None
    error: str | None = None


@dataclass(slots=True)
class WorkerStats:
    inferences: int = 0
    batches: int = 0
    total_inference_ms: float = 0.0
    buffer_reallocations: int = 0
    buffer_capacity: int = 0

    def to_dict(self) -> dict[str, float]:
        count = self.inferences + self.batches
        return {
            "inferences": self.inferences,
            "batches": self.batches,
            "total_inference_ms": round(self.total_inference_ms, 3),
            "average_inference_ms": round(self.total_inference_ms / count, 3) if count else 0.0,
            "buffer_reallocations": self.buffer_reallocations,
            "buffer_capacity": self.buffer_capacity,
        }


class TokenBufferPool:
    """Named int64 buffers that are reallocated only when a request outgrows them."""

    def __init__(self) -> None:
        self._buffers: dict[str, np.ndarray] = {}
        self.reallocations = 0

    def fill(self, name: str, values: np.ndarray) -> np.ndarray:
        size = int(values.size)
        buffer = self._buffers.get(name)
        if buffer is None or buffer.size < size:
            buffer = np.empty(max(size, 1), dtype=np.int64)
            self._buffers[name] = buffer
            self.reallocations += 1
        view = buffer[:size]
        view[:] = values.reshape(-1)
        return view

    @property
    def capacity(self) -> int:
        return max((buffer.size for buffer in self._buffers.values()), default=0)

    def clear(self) -> None:
        self._buffers.clear()


class InferenceWorker:
    """Runs the model session on a dedicated thread fed by a request queue."""

    def __init__(self, session_factory: SessionFactory, deliver: Callable[[WorkerResponse], None]) -> None:
        self._session_factory = session_factory
        self._deliver = deliver
        self._inbox: queue.Queue[WorkerRequest | None] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._session: Any = None
        self._input_names: set[str] = set()
        self._output_index = 0
        self._buffers = TokenBufferPool()
        self.stats = WorkerStats()
        self._handlers: dict[RequestKind, Callable[[Any], Any]] = {
            RequestKind.INIT: self._handle_init,
            RequestKind.INFER: self._handle_infer,
            RequestKind.BATCH_INFER: self._handle_batch_infer,
            RequestKind.GET_STATS: self._handle_stats,
            RequestKind.CLEAR_BUFFERS: self._handle_clear_buffers,
        }
        missing = set(RequestKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"Unhandled worker request kinds: {sorted(k.value for k in missing)}")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._thread = threading.Thread(target=self._run, name="inference-worker", daemon=True)
        self._thread.start()

    def submit(self, request: WorkerRequest) -> None:
        self._inbox.put(request)

    def stop(self, timeout: float | None = 5.0) -> None:
        if self._thread is None:
            return
        self._inbox.put(None)
        self._thread.join(timeout)
        self._thread = None
        self._session = None
        self._buffers.clear()

    def _run(self) -> None:
        while True:
            request = self._inbox.get()
            if request is None:
                break
            handler = self._handlers[request.kind]
            try:
                payload = handler(request.payload)
            except Exception as exc:
                logger.exception("Worker request %s (%s) failed", request.id, request.kind.value)
                response = WorkerResponse(request.id, ResponseStatus.ERROR, error=str(exc) or type(exc).__name__)
            else:
                response = WorkerResponse(request.id, ResponseStatus.SUCCESS, payload=payload)
            self._deliver(response)

    def _handle_init(self, payload: InitPayload) -> dict[str, Any]:
        self._session = self._session_factory(payload.model_data, payload.num_threads)
        self._input_names = {item.name for item in self._session.get_inputs()}
        output_names = [item.name for item in self._session.get_outputs()]
        self._output_index = output_names.index("last_hidden_state") if "last_hidden_state" in output_names else 0
        logger.info("Inference session ready", extra={"ctx_inputs": sorted(self._input_names)})
        return {"inputs": sorted(self._input_names), "outputs": output_names}

    def _handle_infer(self, payload: InferPayload) -> InferResult:
        result = self._run_session(payload)
        self.stats.inferences += 1
        return result

    def _handle_batch_infer(self, payload: InferPayload) -> InferResult:
        result = self._run_session(payload)
        self.stats.batches += 1
        return result

    def _handle_stats(self, _payload: Any) -> dict[str, float]:
        return self.stats.to_dict()

    def _handle_clear_buffers(self, _payload: Any) -> None:
        self._buffers.clear()
        self.stats.buffer_capacity = 0

    def _run_session(self, payload: InferPayload) -> InferResult:
        if self._session is None:
            raise RuntimeError("Inference session is not initialized")
        dims = payload.dims
        feeds = {
            "input_ids": self._buffers.fill("input_ids", payload.input_ids).reshape(dims),
            "attention_mask": self._buffers.fill("attention_mask", payload.attention_mask).reshape(dims),
        }
        if "token_type_ids" in self._input_names:
            feeds["token_type_ids"] = self._buffers.fill("token_type_ids", payload.token_type_ids).reshape(dims)
        started = time.perf_counter()
        outputs = self._session.run(None, feeds)
        elapsed_ms = (time.perf_counter() - started) * 1000
        self.stats.total_inference_ms += elapsed_ms
        self.stats.buffer_reallocations = self._buffers.reallocations
        self.stats.buffer_capacity = self._buffers.capacity
        hidden = np.array(outputs[self._output_index], dtype=np.float32, copy=True)
        return InferResult(hidden_state=hidden, inference_ms=elapsed_ms)


class ConcurrencyLimiter:
    """Counting semaphore that admits waiters strictly in FIFO order."""

    def __init__(self, limit: int) -> None:
        self.limit = max(1, limit)
        self.active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def pending(self) -> int:
        return len(self._waiters)

    async def acquire(self) -> None:
        if self.active < self.limit and not self._waiters:
            self.active += 1
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # slot was handed to us before the cancellation landed
                self.release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self.active = max(0, self.active - 1)

    async def __aenter__(self) -> "ConcurrencyLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class WorkerClient:
    """Async request/response channel to an :class:`InferenceWorker`.

    Every request carries a correlation id; the worker thread hands responses
    back to the event loop, where they resolve the matching pending future.
    Inference requests pass through a FIFO concurrency limiter.
    """

    def __init__(self, session_factory: SessionFactory, concurrent_limit: int) -> None:
        self._worker = InferenceWorker(session_factory, deliver=self._deliver)
        self._limiter = ConcurrencyLimiter(concurrent_limit)
        self._ids = CorrelationCounter()
        self._pending: dict[int, asyncio.Future[WorkerResponse]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def limiter(self) -> ConcurrencyLimiter:
        return self._limiter

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._worker.start()

    async def initialize(self, model_data: bytes, num_threads: int) -> dict[str, Any]:
        return await self._send(RequestKind.INIT, InitPayload(model_data=model_data, num_threads=num_threads))

    async def infer(self, payload: InferPayload) -> InferResult:
        kind = RequestKind.BATCH_INFER if payload.dims[0] > 1 else RequestKind.INFER
        async with self._limiter:
            started = time.perf_counter()
            try:
                result = await self._send(kind, payload)
            except WorkerError:
                EMBED_REQUESTS.labels(outcome="error").inc()
                raise
            EMBED_LATENCY.observe(time.perf_counter() - started)
            EMBED_REQUESTS.labels(outcome="success").inc()
            return result

    async def stats(self) -> dict[str, float]:
        return await self._send(RequestKind.GET_STATS)

    async def clear_buffers(self) -> None:
        await self._send(RequestKind.CLEAR_BUFFERS)

    async def close(self) -> None:
        await asyncio.to_thread(self._worker.stop)
        for future in self._pending.values():
            if not future.done():
                future.set_exception(WorkerError("Inference worker terminated"))
        self._pending.clear()

    async def _send(self, kind: RequestKind, payload: Any = None) -> Any:
        if self._loop is None or not self._worker.is_running:
            raise WorkerError("Inference worker is not running")
        request_id = self._ids.next()
        future: asyncio.Future[WorkerResponse] = self._loop.create_future()
        self._pending[request_id] = future
        self._worker.submit(WorkerRequest(id=request_id, kind=kind, payload=payload))
        try:
            response = await future
        finally:
            self._pending.pop(request_id, None)
        if response.status is ResponseStatus.ERROR:
            raise WorkerError(response.error or f"Worker request {kind.value} failed")
        return response.payload

    def _deliver(self, response: WorkerResponse) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._resolve, response)

    def _resolve(self, response: WorkerResponse) -> None:
        future = self._pending.get(response.id)
        if future is None:
            logger.debug("Dropping worker response for unknown request %s", response.id)
            return
        if not future.done():
            future.set_result(response)


__all__ = [
    "RequestKind",
    "ResponseStatus",
    "InitPayload",
    "InferPayload",
    "InferResult",
    "WorkerRequest",
    "WorkerResponse",
    "WorkerStats",
    "TokenBufferPool",
    "InferenceWorker",
    "ConcurrencyLimiter",
    "WorkerClient",
]
