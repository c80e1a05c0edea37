from reader_ai.worker.host import InferenceWorkerHost, ModelHandle, ModelStatus, WorkerEvent
from reader_ai.worker.progress import ProgressEvent, ProgressStatus
from reader_ai.worker.runtime import ModelKey

__all__ = [
    "InferenceWorkerHost",
    "ModelHandle",
    "ModelKey",
    "ModelStatus",
    "ProgressEvent",
    "ProgressStatus",
    "WorkerEvent",
]
