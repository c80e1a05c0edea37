from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional


def setup_logging(log_dir: Optional[Path] = None, level: str = "INFO") -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / "app.log", encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=handlers,
    )
    # httpx logs every request at INFO; the proxy and Ollama polling would drown the log.
    logging.getLogger("httpx").setLevel(logging.WARNING)
