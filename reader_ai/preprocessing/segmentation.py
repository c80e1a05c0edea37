from __future__ import annotations

import re


_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

MAX_CHUNK_CHARS = 1000


def split_sentences(text: str) -> list[str]:
    if not text:
        return []
    return [s for s in _SENTENCE_SPLIT_RE.split(text.strip()) if s]


def split_into_chunks(text: str, max_chars: int = MAX_CHUNK_CHARS) -> list[str]:
    """Greedy sentence packing; a single over-long sentence becomes its own chunk."""
    chunks: list[str] = []
    current = ""
    for sentence in split_sentences(text):
        if current and len(current) + len(sentence) > max_chars:
            chunks.append(current.strip())
            current = ""
        current += sentence + " "
    if current.strip():
        chunks.append(current.strip())
    return chunks or [text]
