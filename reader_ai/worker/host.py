from __future__ import annotations

import asyncio
import itertools
import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from reader_ai.errors import ErrorKind, InferenceFailure
from reader_ai.types import TaskParameters
from reader_ai.worker.progress import ProgressCallback, ProgressEvent, ProgressStatus, ProgressTracker
from reader_ai.worker.runtime import Engine, EngineOutput, ModelKey, TransformersLoader


logger = logging.getLogger("reader_ai.worker.host")

Loader = Callable[[ModelKey, ProgressCallback], Engine]


@dataclass(frozen=True)
class ModelHandle:
    key: ModelKey
    generation: int


@dataclass(frozen=True)
class ModelStatus:
    is_loaded: bool
    model_id: Optional[str] = None
    is_loading: bool = False


class JobKind(str, Enum):
    ENSURE = "ensure"
    RUN = "run"
    INFER = "infer"
    UNLOAD = "unload"


class WorkerEventType(str, Enum):
    PROGRESS = "progress"
    RESULT = "result"
    ERROR = "error"


@dataclass(frozen=True)
class WorkerEvent:
    request_id: int
    type: WorkerEventType
    progress: Optional[ProgressEvent] = None
    result: Any = None
    error: Optional[InferenceFailure] = None

    @property
    def terminal(self) -> bool:
        return self.type is not WorkerEventType.PROGRESS


def _out_of_memory(e: BaseException) -> bool:
    # torch.cuda.OutOfMemoryError is a RuntimeError carrying this message.
    return isinstance(e, MemoryError) or (isinstance(e, RuntimeError) and "out of memory" in str(e).lower())


@dataclass
class _Job:
    request_id: int
    kind: JobKind
    payload: dict[str, Any]
    emit: Callable[[WorkerEvent], None]
    abandoned: threading.Event = field(default_factory=threading.Event)


class InferenceWorkerHost:
    """Runs model loading and inference on one dedicated thread.

    Jobs are handled strictly in submission order. At most one model is resident;
    loading a different key evicts it. Callers talk to the host through asyncio
    (`stream` and the helpers built on it) and never block their event loop.
    """

    def __init__(self, loader: Optional[Loader] = None, *, name: str = "reader-ai-worker") -> None:
        self._loader: Loader = loader or TransformersLoader()
        self._jobs: "queue.Queue[Optional[_Job]]" = queue.Queue()
        self._ids = itertools.count(1)
        self._closed = False

        # Written by the worker thread only; read under the lock by status().
        self._lock = threading.Lock()
        self._engine: Optional[Engine] = None
        self._handle: Optional[ModelHandle] = None
        self._loading: Optional[ModelKey] = None
        self._generation = 0

        self._thread = threading.Thread(target=self._serve, name=name, daemon=True)
        self._thread.start()

    @property
    def reachable(self) -> bool:
        return not self._closed and self._thread.is_alive()

    def status(self) -> ModelStatus:
        with self._lock:
            return ModelStatus(
                is_loaded=self._handle is not None,
                model_id=self._handle.key.model_id if self._handle else None,
                is_loading=self._loading is not None,
            )

    # ------------------------------------------------------------------
    # Caller side
    # ------------------------------------------------------------------

    async def stream(self, kind: JobKind | str, **payload: Any) -> AsyncIterator[WorkerEvent]:
        """Submit one job and yield its progress events, then exactly one terminal event.

        Leaving the iteration early (cancellation, break) marks the job abandoned:
        a run that has not started yet is skipped, a download still completes.
        """
        if not self.reachable:
            raise InferenceFailure(ErrorKind.ENGINE_FAILURE, "Inference worker is not running")

        loop = asyncio.get_running_loop()
        events: "asyncio.Queue[WorkerEvent]" = asyncio.Queue()
        abandoned = threading.Event()

        def emit(event: WorkerEvent) -> None:
            if abandoned.is_set():
                return
            try:
                loop.call_soon_threadsafe(events.put_nowait, event)
            except RuntimeError:
                # Event loop already closed; nobody is listening any more.
                abandoned.set()

        job = _Job(next(self._ids), JobKind(kind), payload, emit, abandoned)
        self._jobs.put(job)

        finished = False
        try:
            while True:
                event = await events.get()
                if event.terminal:
                    finished = True
                yield event
                if finished:
                    return
        finally:
            if not finished:
                abandoned.set()
                logger.debug("Request %d (%s) abandoned by caller", job.request_id, job.kind.value)

    async def _request(self, kind: JobKind, on_progress: Optional[ProgressCallback], **payload: Any) -> Any:
        async for event in self.stream(kind, **payload):
            if event.type is WorkerEventType.PROGRESS:
                if on_progress is not None and event.progress is not None:
                    on_progress(event.progress)
            elif event.type is WorkerEventType.ERROR:
                assert event.error is not None
                raise event.error
            else:
                return event.result
        raise InferenceFailure(ErrorKind.ENGINE_FAILURE, "Inference worker stopped without a result")

    async def ensure_model(self, key: ModelKey, on_progress: Optional[ProgressCallback] = None) -> ModelHandle:
        return await self._request(JobKind.ENSURE, on_progress, key=key)

    async def run(
        self,
        handle: ModelHandle,
        text: str,
        params: TaskParameters,
        on_progress: Optional[ProgressCallback] = None,
    ) -> EngineOutput:
        return await self._request(JobKind.RUN, on_progress, handle=handle, text=text, params=params)

    async def infer(
        self,
        key: ModelKey,
        text: str,
        params: TaskParameters,
        on_progress: Optional[ProgressCallback] = None,
    ) -> EngineOutput:
        """Load `key` if needed and run it, as one job so no other request can evict in between."""
        return await self._request(JobKind.INFER, on_progress, key=key, text=text, params=params)

    async def unload(self, key: Optional[ModelKey] = None) -> bool:
        return await self._request(JobKind.UNLOAD, None, key=key)

    def close(self, timeout: float = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._jobs.put(None)
        self._thread.join(timeout)

    # ------------------------------------------------------------------
    # Worker thread
    # ------------------------------------------------------------------

    def _serve(self) -> None:
        while True:
            job = self._jobs.get()
            if job is None:
                break
            self._process(job)
        self._evict()
        logger.info("Inference worker stopped")

    def _process(self, job: _Job) -> None:
        if job.kind is JobKind.RUN and job.abandoned.is_set():
            logger.debug("Skipping abandoned run request %d", job.request_id)
            return

        def forward(event: ProgressEvent) -> None:
            job.emit(WorkerEvent(job.request_id, WorkerEventType.PROGRESS, progress=event))

        tracker = ProgressTracker(forward)
        try:
            result = self._dispatch(job, tracker)
        except InferenceFailure as e:
            job.emit(WorkerEvent(job.request_id, WorkerEventType.ERROR, error=e))
        except Exception as e:
            logger.exception("Unexpected worker error in request %d", job.request_id)
            failure = InferenceFailure(ErrorKind.ENGINE_FAILURE, f"Inference worker error: {e}")
            job.emit(WorkerEvent(job.request_id, WorkerEventType.ERROR, error=failure))
        else:
            job.emit(WorkerEvent(job.request_id, WorkerEventType.RESULT, result=result))

    def _dispatch(self, job: _Job, tracker: ProgressTracker) -> Any:
        p = job.payload
        if job.kind is JobKind.ENSURE:
            return self._ensure(p["key"], tracker)
        if job.kind is JobKind.RUN:
            return self._run(p["handle"], p["text"], p["params"])
        if job.kind is JobKind.INFER:
            handle = self._ensure(p["key"], tracker)
            if job.abandoned.is_set():
                raise InferenceFailure(ErrorKind.ENGINE_FAILURE, "Request abandoned before inference started")
            return self._run(handle, p["text"], p["params"])
        if job.kind is JobKind.UNLOAD:
            key = p.get("key")
            if self._handle is None or (key is not None and self._handle.key != key):
                return False
            self._evict()
            return True
        raise InferenceFailure(ErrorKind.ENGINE_FAILURE, f"Unknown job kind {job.kind!r}")

    def _ensure(self, key: ModelKey, tracker: ProgressTracker) -> ModelHandle:
        if self._handle is not None and self._handle.key == key and self._engine is not None:
            tracker(ProgressEvent(ProgressStatus.READY, file=key.model_id))
            return self._handle

        self._evict()
        with self._lock:
            self._loading = key
        logger.info("Loading model %s", key)
        try:
            engine = self._loader(key, tracker)
        except InferenceFailure:
            raise
        except Exception as e:
            if _out_of_memory(e):
                logger.exception("Out of memory while loading model %s", key)
                raise InferenceFailure(ErrorKind.ENGINE_FAILURE, f"Out of memory loading {key.model_id}: {e}") from e
            logger.exception("Failed to load model %s", key)
            raise InferenceFailure(ErrorKind.MODEL_LOAD_FAILED, f"Failed to load model {key.model_id}: {e}") from e
        finally:
            with self._lock:
                self._loading = None

        with self._lock:
            self._generation += 1
            self._engine = engine
            self._handle = ModelHandle(key, self._generation)
        tracker(ProgressEvent(ProgressStatus.READY, file=key.model_id))
        return self._handle

    def _run(self, handle: ModelHandle, text: str, params: TaskParameters) -> EngineOutput:
        if handle != self._handle or self._engine is None:
            raise InferenceFailure(ErrorKind.ENGINE_FAILURE, f"Model {handle.key.model_id} is no longer loaded")
        try:
            return self._engine.run(text, params)
        except Exception as e:
            # MemoryError, CUDA OOM and friends all leave the engine in an unknown state.
            logger.exception("Inference failed on %s; unloading", handle.key)
            self._evict()
            raise InferenceFailure(ErrorKind.ENGINE_FAILURE, f"Inference failed: {e}") from e

    def _evict(self) -> None:
        with self._lock:
            engine, handle = self._engine, self._handle
            self._engine = None
            self._handle = None
        if engine is None:
            return
        logger.info("Unloading model %s", handle.key if handle else "?")
        try:
            engine.close()
        except Exception:
            logger.warning("Error while releasing model %s", handle.key if handle else "?", exc_info=True)


__all__ = [
    "InferenceWorkerHost",
    "JobKind",
    "ModelHandle",
    "ModelStatus",
    "WorkerEvent",
    "WorkerEventType",
]
