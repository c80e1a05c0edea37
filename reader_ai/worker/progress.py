from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional


class ProgressStatus(str, Enum):
    INITIATE = "initiate"
    DOWNLOAD = "download"
    PROGRESS = "progress"
    DONE = "done"
    READY = "ready"


@dataclass(frozen=True)
class ProgressEvent:
    status: ProgressStatus
    loaded: Optional[int] = None
    total: Optional[int] = None
    file: Optional[str] = None
    percent: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"status": self.status.value}
        for name in ("loaded", "total", "file", "percent"):
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out


ProgressCallback = Callable[[ProgressEvent], None]


def _coarse_percent(status: ProgressStatus) -> float:
    if status in (ProgressStatus.DONE, ProgressStatus.READY):
        return 100.0
    return 0.0


class ProgressTracker:
    """Stamps a non-decreasing 0-100 percentage onto every event it forwards.

    The percentage comes from loaded/total bytes when both are known, otherwise
    from the phase alone (initiate/download -> 0, done/ready -> 100). A later
    event never reports less than an earlier one, even when a new file starts.
    """

    def __init__(self, sink: Optional[ProgressCallback] = None) -> None:
        self._sink = sink
        self._percent = 0.0

    @property
    def percent(self) -> float:
        return self._percent

    def __call__(self, event: ProgressEvent) -> None:
        if event.loaded is not None and event.total:
            computed = min(100.0, 100.0 * event.loaded / event.total)
        else:
            computed = _coarse_percent(event.status)
        self._percent = max(self._percent, round(computed, 1))
        if self._sink is not None:
            self._sink(
                ProgressEvent(
                    status=event.status,
                    loaded=event.loaded,
                    total=event.total,
                    file=event.file,
                    percent=self._percent,
                )
            )
