from __future__ import annotations

from dataclasses import dataclass

from reader_ai.types import SummaryLength, SummaryStyle


@dataclass(frozen=True)
class LengthBudget:
    words: int
    sentences: str


LENGTH_CONFIG: dict[SummaryLength, LengthBudget] = {
    SummaryLength.SHORT: LengthBudget(50, "2-3"),
    SummaryLength.MEDIUM: LengthBudget(100, "4-5"),
    SummaryLength.LONG: LengthBudget(200, "6-8"),
    SummaryLength.EXTENDED: LengthBudget(300, "8-12"),
}

STYLE_INSTRUCTIONS: dict[SummaryStyle, str] = {
    SummaryStyle.TLDR: "Write a compact paragraph that covers the main points.",
    SummaryStyle.KEY_POINTS: "Write the summary as a bulleted list of the key points, one per line.",
    SummaryStyle.TEASER: "Write an engaging teaser that makes the reader want to open the article.",
    SummaryStyle.HEADLINE: "Write a single headline-style sentence.",
}

LANGUAGE_NAMES: dict[str, str] = {
    "es": "Spanish",
    "en": "English",
    "fr": "French",
    "de": "German",
    "pt": "Portuguese",
    "it": "Italian",
    "ca": "Catalan",
    "nl": "Dutch",
}

MAX_INPUT_CHARS = 15_000


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code.lower(), code)


def build_summary_prompt(
    text: str,
    length: SummaryLength = SummaryLength.MEDIUM,
    *,
    output_language: str = "es",
    style: SummaryStyle = SummaryStyle.TLDR,
    max_input_chars: int = MAX_INPUT_CHARS,
) -> str:
    budget = LENGTH_CONFIG[length]
    return (
        "You are an expert at summarizing news articles. Create a clear and concise summary.\n"
        "\n"
        "Instructions:\n"
        f"- Write about {budget.words} words ({budget.sentences} sentences)\n"
        "- Capture the main points and the most relevant information\n"
        "- Keep a neutral, informative tone\n"
        f"- {STYLE_INSTRUCTIONS[style]}\n"
        f"- Write the summary in {language_name(output_language)}\n"
        '- Do not start with phrases like "This article is about..." or "In summary..."\n'
        "\n"
        "Article:\n"
        f"{text[:max_input_chars]}\n"
        "\n"
        "Summary:"
    )


def build_translation_prompt(
    text: str,
    target_language: str,
    source_language: str = "auto",
    *,
    max_input_chars: int = MAX_INPUT_CHARS,
) -> str:
    source = "the source language" if source_language == "auto" else language_name(source_language)
    return (
        f"Translate the following text from {source} to {language_name(target_language)}.\n"
        "Keep paragraph breaks. Return only the translation, without notes or explanations.\n"
        "\n"
        f"{text[:max_input_chars]}"
    )
