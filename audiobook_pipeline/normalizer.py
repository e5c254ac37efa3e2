from __future__ import annotations

import html
import logging
import re
import unicodedata
from dataclasses import dataclass

logger = logging.getLogger(__name__)

__all__ = ["NormalizeOptions", "CleanStats", "normalize", "clean_stats"]

_WIKI_IMAGE_PATTERN = re.compile(r"!\[\[[^\]|]+(?:\|([^\]|]+))?(?:\|[^\]]+)?\]\]")
_WIKI_LINK_PATTERN = re.compile(r"\[\[([^\]]+)\]\]")
_MD_IMAGE_PATTERN = re.compile(r"!\[([^\]]*)\]\([^)]+\)")
_MD_LINK_PATTERN = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_CODE_BLOCK_PATTERN = re.compile(r"```.*?```", re.DOTALL)
_INLINE_CODE_PATTERN = re.compile(r"`([^`]+)`")
_HEADER_PATTERN = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_RULE_PATTERN = re.compile(r"^[ \t]*[-*_]{3,}[ \t]*$", re.MULTILINE)
_EMPHASIS_PATTERNS = (
    re.compile(r"\*\*([^*]+)\*\*"),
    re.compile(r"\*([^*]+)\*"),
    re.compile(r"__([^_]+)__"),
    re.compile(r"_([^_]+)_"),
    re.compile(r"~~([^~]+)~~"),
)
_QUOTE_PATTERN = re.compile(r"^[ \t]*>[ \t]?", re.MULTILINE)
_BULLET_PATTERN = re.compile(r"^[ \t]*[-*+][ \t]+", re.MULTILINE)
_NUMBERED_PATTERN = re.compile(r"^[ \t]*\d+\.[ \t]+", re.MULTILINE)
_HASHTAG_PATTERN = re.compile(r"#[\w/-]+")

_EMOJI_PATTERN = re.compile(
    "["
    "\U0001F000-\U0001FAFF"
    "\U0001FC00-\U0001FFFF"
    "\u2600-\u27BF"
    "\u2B00-\u2BFF"
    "\uFE0E\uFE0F\u200D"
    "]+"
)
_CHAPTER_DASH_PATTERN = re.compile(r"((?:Chương|Chapter)\s+\d+)\s*-\s+", re.IGNORECASE)
_ELLIPSIS_PATTERN = re.compile(r"(\w)\s*(?:\.\.\.|…)\s*(\w)")
_REPEATED_MARKUP_PATTERN = re.compile(r"[*=#_~]{2,}")
_DIGIT_JOIN_PATTERN = re.compile(r"(\d)[-_](\d)")
_WORD_JOIN_PATTERN = re.compile(r"([^\W\d_])[-/](?=[^\W\d_])")
_SYMBOL_SPACE_PATTERN = re.compile(r"[_/+@=^]")
_UNSPEAKABLE_PATTERN = re.compile(r"[^\w\s.,!?;:()]|_")
_PARAGRAPH_BREAK_PATTERN = re.compile(r"([.!?;:]?)[ \t]*\n{2,}[ \t]*")


@dataclass(frozen=True)
class NormalizeOptions:
    """
    ``preserve_newlines`` keeps line and paragraph breaks (used before dialect
    translation so the translator sees the original pacing). ``dash_replacement``
    is what em-dashes and ``--`` runs turn into.
    """

    preserve_newlines: bool = False
    dash_replacement: str = ","


@dataclass(frozen=True)
class CleanStats:
    original_length: int
    cleaned_length: int
    removed: int
    percentage: int


def normalize(text: str, options: NormalizeOptions | None = None) -> str:
    """
    Turn raw (often markdown flavoured) text into speakable text.

    Markup, HTML entities, decorative rules, emoji and every symbol except
    ``. , ! ? ; : ( )`` are removed; letters and digits of any script survive.
    The function is pure: identical input and options give identical output.
    """
    if not text or not text.strip():
        return ""

    options = options or NormalizeOptions()
    dash = options.dash_replacement

    cleaned = unicodedata.normalize("NFC", text)
    cleaned = _strip_markup(cleaned)
    cleaned = html.unescape(cleaned).replace("\xa0", " ")

    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    cleaned = _collapse_horizontal(cleaned, options.preserve_newlines)

    chapter_separator = "." if dash == "," else dash
    cleaned = _CHAPTER_DASH_PATTERN.sub(lambda m: f"{m.group(1)}{chapter_separator} ", cleaned)

    cleaned = _EMOJI_PATTERN.sub("", cleaned)
    cleaned = cleaned.replace("—", dash)
    cleaned = _REPEATED_MARKUP_PATTERN.sub(" ", cleaned)
    cleaned = re.sub(r"-{2,}", dash, cleaned)
    cleaned = re.sub(r"[ \t]+[-–][ \t]+", f"{dash} ", cleaned)
    cleaned = _DIGIT_JOIN_PATTERN.sub(r"\1 \2", cleaned)
    cleaned = _WORD_JOIN_PATTERN.sub(r"\1 ", cleaned)
    cleaned = _SYMBOL_SPACE_PATTERN.sub(" ", cleaned)
    cleaned = re.sub(r"[-–]", dash, cleaned)
    cleaned = _ELLIPSIS_PATTERN.sub(r"\1, \2", cleaned)
    cleaned = _UNSPEAKABLE_PATTERN.sub("", cleaned)

    cleaned = cleaned.strip()
    cleaned = "\n".join(
        line for line in cleaned.split("\n") if not line.strip() or len(line.strip()) >= 2
    )

    if options.preserve_newlines:
        cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
        cleaned = "\n".join(re.sub(r"\s+", " ", line).strip() for line in cleaned.split("\n"))
    else:
        cleaned = _PARAGRAPH_BREAK_PATTERN.sub(lambda m: (m.group(1) or ".") + " ", cleaned)
        cleaned = re.sub(r"\s+", " ", cleaned)

    return cleaned.strip()


def clean_stats(original: str, cleaned: str) -> CleanStats:
    original_length = len(original)
    cleaned_length = len(cleaned)
    removed = original_length - cleaned_length
    percentage = round(removed / original_length * 100) if original_length else 0
    return CleanStats(
        original_length=original_length,
        cleaned_length=cleaned_length,
        removed=removed,
        percentage=percentage,
    )


def _strip_markup(text: str) -> str:
    text = _CODE_BLOCK_PATTERN.sub("", text)
    text = _WIKI_IMAGE_PATTERN.sub(lambda m: m.group(1) or "", text)
    text = _WIKI_LINK_PATTERN.sub(r"\1", text)
    text = _MD_IMAGE_PATTERN.sub("", text)
    text = _MD_LINK_PATTERN.sub(r"\1", text)
    text = _HEADER_PATTERN.sub("", text)
    text = _RULE_PATTERN.sub("", text)
    for pattern in _EMPHASIS_PATTERNS:
        text = pattern.sub(r"\1", text)
    text = _INLINE_CODE_PATTERN.sub(r"\1", text)
    text = _QUOTE_PATTERN.sub("", text)
    text = _BULLET_PATTERN.sub("", text)
    text = _NUMBERED_PATTERN.sub("", text)
    text = _HASHTAG_PATTERN.sub("", text)
    return text


def _collapse_horizontal(text: str, preserve_newlines: bool) -> str:
    if preserve_newlines:
        return "\n".join(re.sub(r"[ \t]+", " ", line).strip() for line in text.split("\n"))
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"[ \t]+\n", "\n", text)
    return re.sub(r"\n[ \t]+", "\n", text)
