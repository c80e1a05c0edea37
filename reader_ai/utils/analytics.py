from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional


logger = logging.getLogger("reader_ai.analytics")


@dataclass
class RequestLogRecord:
    ts: float
    latency_ms: float
    status: int
    input_chars: int
    summary_chars: int
    length: Optional[str] = None
    tokens_used: Optional[int] = None
    error: Optional[str] = None


class AnalyticsStore:
    """Append-only request log plus running usage averages for the proxy."""

    def __init__(self, log_dir: Path, requests_jsonl: str, usage_json: str):
        self.log_dir = log_dir
        self.requests_path = log_dir / requests_jsonl
        self.usage_path = log_dir / usage_json
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def append_request(self, rec: RequestLogRecord) -> None:
        with self._lock:
            with self.requests_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(asdict(rec), ensure_ascii=False) + "\n")
            self._update_usage(rec)

    def _update_usage(self, rec: RequestLogRecord) -> None:
        base: dict[str, Any] = {
            "updated_at": time.time(),
            "request_count": 0,
            "success_count": 0,
            "avg_latency_ms": 0.0,
            "avg_summary_chars": 0.0,
            "tokens_used": 0,
            "status_counts": {},
        }
        usage = self.read_usage()
        if usage:
            base.update(usage)

        n = int(base.get("request_count", 0))
        base["request_count"] = n + 1
        base["avg_latency_ms"] = (float(base["avg_latency_ms"]) * n + rec.latency_ms) / (n + 1)

        statuses = dict(base.get("status_counts") or {})
        statuses[str(rec.status)] = int(statuses.get(str(rec.status), 0)) + 1
        base["status_counts"] = statuses

        if rec.status == 200:
            ok = int(base.get("success_count", 0))
            base["success_count"] = ok + 1
            base["avg_summary_chars"] = (float(base["avg_summary_chars"]) * ok + rec.summary_chars) / (ok + 1)
            base["tokens_used"] = int(base.get("tokens_used", 0)) + (rec.tokens_used or 0)

        base["updated_at"] = time.time()
        self.usage_path.write_text(json.dumps(base, indent=2), encoding="utf-8")

    def read_usage(self) -> Optional[dict[str, Any]]:
        if not self.usage_path.exists():
            return None
        try:
            return json.loads(self.usage_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring unreadable usage file %s", self.usage_path)
            return None
