from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional


logger = logging.getLogger("reader_ai.preprocessing.language")

UNKNOWN = "unknown"
SAMPLE_CHARS = 1000
MIN_SCORE = 0.1

_NON_LETTER_RE = re.compile(r"[^a-zà-ÿ\s]")

_COMMON_WORDS: dict[str, frozenset[str]] = {
    "en": frozenset(
        "the be to of and a in that have i it for not on with he as you do at this but his by from they we "
        "say her she or an will my one all would there their what is are was were been has had can could "
        "should may might must shall when where which who how".split()
    ),
    "es": frozenset(
        "el la de que y a en un ser se no haber por con su para como estar tener le lo todo pero más hacer "
        "o poder decir este ir otro ese si me ya ver porque dar cuando él muy sin vez mucho saber qué sobre "
        "mi alguno mismo yo también hasta los las del una es son está".split()
    ),
    "fr": frozenset(
        "le de un à être et en avoir que pour dans ce il qui ne sur se pas plus pouvoir par je avec tout "
        "faire son mettre autre on mais nous comme ou si leur y dire elle devoir avant deux même prendre "
        "aussi celui donner bien où fois vous les des est sont une".split()
    ),
    "de": frozenset(
        "der die und in den von zu das mit sich des auf für ist im dem nicht ein eine als auch es an werden "
        "aus er hat dass sie nach wird bei einer um am sind noch wie einem über einen so zum war haben nur "
        "oder aber vor zur bis mehr durch man".split()
    ),
    "pt": frozenset(
        "o a de que e do da em um para é com não uma os no se na por mais as dos como mas foi ao ele das tem "
        "à seu sua ou ser quando muito há nos já está eu também só pelo pela até isso ela entre era depois "
        "sem mesmo aos ter seus quem nas me esse eles".split()
    ),
    "it": frozenset(
        "il di che e la per un in è una a non sono da si con del le della come ma anche lo gli al più se "
        "questo nel alla ha mi ci ne io dei delle loro essere molto stato tutto fare quando già perché".split()
    ),
}

_FRENCH_HINT_RE = re.compile(r"\b(les|des|est|sont|pour|avec|dans|sur|par|une|deux|trois)\b", re.IGNORECASE)


@dataclass(frozen=True)
class LanguageGuess:
    language: str
    confidence: float


def detect_language(text: str) -> LanguageGuess:
    """Stop-word heuristic over the first characters of `text`."""
    sample = text[:SAMPLE_CHARS]
    words = [w for w in _NON_LETTER_RE.sub("", sample.lower()).split() if len(w) > 1]
    if not words:
        return LanguageGuess(UNKNOWN, 0.0)

    denom = min(len(words), 100)
    scores = {
        code: sum(1 for w in words if w in vocab) / denom
        for code, vocab in _COMMON_WORDS.items()
    }
    ranked = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)
    best, best_score = ranked[0]
    if best_score < MIN_SCORE:
        return LanguageGuess(UNKNOWN, best_score)

    # Romance languages share most short words; break near-ties with French-only markers.
    if len(ranked) > 1 and best_score - ranked[1][1] < 0.05 and _FRENCH_HINT_RE.search(sample):
        best, best_score = "fr", max(best_score, ranked[0][1] + 0.1)

    return LanguageGuess(best, min(best_score, 1.0))


def resolve_source_language(text: str, source: Optional[str], fallback: str = "en") -> str:
    """Turn "auto" (or nothing) into a concrete language code."""
    if source and source.lower() != "auto":
        return source.lower()
    guess = detect_language(text)
    if guess.language == UNKNOWN:
        logger.warning("Could not detect source language; assuming %s", fallback)
        return fallback
    return guess.language
