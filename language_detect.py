"""Lightweight Japanese/English language detection for selected text."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class Language(Enum):
    EN = "en"
    JA = "ja"

    @property
    def opposite(self) -> "Language":
        return Language.JA if self is Language.EN else Language.EN

    @property
    def display_name(self) -> str:
        return LANGUAGE_DISPLAY_NAMES[self]


LANGUAGE_DISPLAY_NAMES = {
    Language.JA: "日本語",
    Language.EN: "英語",
}

# Hiragana, katakana, CJK ideographs, CJK punctuation and half-width katakana.
JAPANESE_CHAR_PATTERN = re.compile(
    "[\u3040-\u309F\u30A0-\u30FF\u4E00-\u9FFF\u3000-\u303F\uFF65-\uFF9F]"
)
_WHITESPACE_PATTERN = re.compile(r"\s")

SHORT_TEXT_LENGTH = 10
JAPANESE_RATIO_THRESHOLD = 0.1


@dataclass(frozen=True)
class DetectionResult:
    language: Language
    confidence: float


def japanese_ratio(text: str) -> float:
    """Return the share of Japanese characters among non-whitespace characters."""

    cleaned = _WHITESPACE_PATTERN.sub("", text)
    if not cleaned:
        return 0.0
    return len(JAPANESE_CHAR_PATTERN.findall(cleaned)) / len(cleaned)


def detect_language(text: str) -> DetectionResult:
    """Classify ``text`` as Japanese or English with a confidence score.

    Empty or whitespace-only input yields ``Language.EN`` with confidence 0.
    That result is a sentinel rather than a detection, and callers treat any
    confidence below 0.5 as "unknown".

    Texts shorter than ten characters are classified by the presence of a
    single Japanese character because the ratio is unreliable on them.
    """

    trimmed = text.strip()
    if not trimmed:
        return DetectionResult(Language.EN, 0.0)

    ratio = japanese_ratio(trimmed)

    if len(trimmed) < SHORT_TEXT_LENGTH:
        if JAPANESE_CHAR_PATTERN.search(trimmed):
            return DetectionResult(Language.JA, min(0.8, 0.5 + ratio * 0.5))
        return DetectionResult(Language.EN, 0.7)

    if ratio >= JAPANESE_RATIO_THRESHOLD:
        return DetectionResult(Language.JA, min(1.0, 0.5 + ratio))
    return DetectionResult(Language.EN, min(1.0, 0.6 + (1 - ratio) * 0.4))

