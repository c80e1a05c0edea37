from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional

from reader_ai.errors import invalid_input


logger = logging.getLogger("reader_ai.cloud.keys")


@dataclass(frozen=True)
class StoredKey:
    api_key: str
    validated: bool
    saved_at: str


class ApiKeyStore:
    """The user's own Gemini key, kept in a small JSON file readable only by its owner."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> Optional[StoredKey]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return StoredKey(
                api_key=str(data["api_key"]),
                validated=bool(data.get("validated", False)),
                saved_at=str(data.get("saved_at", "")),
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable key file %s: %s", self.path, e)
            return None

    def save(self, api_key: str, *, validated: bool) -> StoredKey:
        api_key = api_key.strip()
        if not api_key:
            raise invalid_input("API key cannot be empty")
        stored = StoredKey(api_key, validated, datetime.now(timezone.utc).isoformat())
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps({"api_key": stored.api_key, "validated": stored.validated, "saved_at": stored.saved_at})
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.chmod(self.path, 0o600)
        return stored

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()

    def validated_key(self) -> Optional[str]:
        stored = self.load()
        if stored is None or not stored.validated:
            return None
        return stored.api_key

    async def validate_and_store(self, api_key: str, validator: Callable[[str], Awaitable[bool]]) -> bool:
        """Store `api_key`; it only counts as validated if `validator` accepted it."""
        ok = await validator(api_key.strip())
        self.save(api_key, validated=ok)
        logger.info("Stored Gemini key (validated=%s)", ok)
        return ok


__all__ = ["ApiKeyStore", "StoredKey"]
