from __future__ import annotations

import re

from bs4 import BeautifulSoup


_WS_RE = re.compile(r"\s+")

# Placeholder tags some translators leak into their output.
_ARTIFACT_RES = [
    re.compile(r"\s*\[\[/?tag_\d+\]\]\s*", re.IGNORECASE),
    re.compile(r"\s*\{\{?tag_\d+\}\}?\s*", re.IGNORECASE),
    re.compile(r"\s*</?tag_\d+>\s*", re.IGNORECASE),
    re.compile(r"\s*\[\d+\]\s*"),
    re.compile(r"\s*\{\d+\}\s*"),
]
_SPACE_BEFORE_PUNCT_RE = re.compile(r"\s+([.,;:!?)])")
_SPACE_AFTER_OPEN_RE = re.compile(r"([(\[\"])\s+")


def strip_html(text: str) -> str:
    """Remove HTML tags, scripts/styles, and return visible text."""
    if "<" not in text and ">" not in text:
        return text
    soup = BeautifulSoup(text, "html.parser")
    for tag in soup(["script", "style", "meta", "noscript"]):
        tag.decompose()
    return soup.get_text(" ")


def normalize_whitespace(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


def extract_text_for_summary(html: str) -> str:
    """Plain text of an article body, ready to be sent to any provider."""
    if not html:
        return ""
    return normalize_whitespace(strip_html(html))


def clean_translation_artifacts(text: str) -> str:
    for pattern in _ARTIFACT_RES:
        text = pattern.sub(" ", text)
    text = normalize_whitespace(text)
    text = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", text)
    text = _SPACE_AFTER_OPEN_RE.sub(r"\1", text)
    return text.strip()
