from __future__ import annotations

import logging
import re
from typing import List

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_MAX_CHUNK_CHARS",
    "DEFAULT_TRANSLATION_CHARS",
    "PARAGRAPH_SEPARATOR",
    "segment",
    "split_sentences",
    "split_for_translation",
    "hard_split_by_length",
    "extract_preview_text",
]

DEFAULT_MAX_CHUNK_CHARS = 3000
DEFAULT_TRANSLATION_CHARS = 2000
PARAGRAPH_SEPARATOR = "\n\n"

PARAGRAPH_PATTERN = re.compile(r"\n\s*\n")
SENTENCE_BOUNDARY_PATTERN = re.compile(r"([.?!。\n]+)")


def segment(text: str, max_chars: int = DEFAULT_MAX_CHUNK_CHARS) -> List[str]:
    """
    Split normalized text into ordered chunks of at most ``max_chars`` characters.

    Blank-line separated paragraphs are packed greedily into a buffer joined by a
    paragraph separator. A paragraph that alone exceeds the limit is broken at
    sentence terminators and, as a last resort, at the nearest preceding space or
    at a hard character cut. The result is deterministic for a given input.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive.")

    text = text or ""
    if not text.strip():
        return []

    paragraphs = [p.strip() for p in PARAGRAPH_PATTERN.split(text) if p.strip()]

    chunks: List[str] = []
    buffer = ""
    for paragraph in paragraphs:
        candidate = f"{buffer}{PARAGRAPH_SEPARATOR}{paragraph}" if buffer else paragraph
        if len(candidate) <= max_chars:
            buffer = candidate
            continue

        if buffer:
            chunks.append(buffer)
            buffer = ""

        if len(paragraph) <= max_chars:
            buffer = paragraph
        else:
            logger.debug(
                "Paragraph of %d chars exceeds limit %d; splitting on sentences.",
                len(paragraph),
                max_chars,
            )
            chunks.extend(_split_long_paragraph(paragraph, max_chars))

    if buffer:
        chunks.append(buffer)

    return [chunk.strip() for chunk in chunks if chunk.strip()]


def split_sentences(text: str) -> List[str]:
    """
    Split ``text`` after runs of ``. ? ! 。`` or newlines, keeping each
    terminator attached to the sentence it ends. Joining the result gives the
    input back unchanged.
    """
    parts = SENTENCE_BOUNDARY_PATTERN.split(text or "")
    sentences: List[str] = []
    for idx in range(0, len(parts), 2):
        body = parts[idx]
        terminator = parts[idx + 1] if idx + 1 < len(parts) else ""
        if body or terminator:
            sentences.append(body + terminator)
    return sentences


def split_for_translation(text: str, max_chars: int = DEFAULT_TRANSLATION_CHARS) -> List[str]:
    """
    Coarser segmentation used before dialect translation: sentences are packed
    up to ``max_chars`` without any paragraph logic or hard cuts, since the
    translator only needs bounded requests.
    """
    pieces: List[str] = []
    current = ""
    for sentence in split_sentences(text):
        if current and len(current + sentence) > max_chars:
            pieces.append(current.strip())
            current = ""
        current += sentence
    if current.strip():
        pieces.append(current.strip())
    return [piece for piece in pieces if piece]


def hard_split_by_length(text: str, max_chars: int) -> List[str]:
    """
    Fallback split for text no sentence boundary could bring under the limit.

    Cuts at the last space at or before ``max_chars``; when the window holds no
    space the text is cut at exactly ``max_chars`` characters.
    """
    remaining = (text or "").strip()
    if not remaining:
        return []

    fragments: List[str] = []
    while len(remaining) > max_chars:
        split_point = remaining.rfind(" ", 0, max_chars + 1)
        if split_point > 0:
            head, remaining = remaining[:split_point], remaining[split_point:]
        else:
            head, remaining = remaining[:max_chars], remaining[max_chars:]
        head = head.strip()
        if head:
            fragments.append(head)
        remaining = remaining.strip()

    if remaining:
        fragments.append(remaining)
    return fragments


def extract_preview_text(text: str, max_words: int = 30) -> str:
    """Return the first ``max_words`` words of ``text`` for a short audio preview."""
    trimmed = (text or "").strip()
    if not trimmed:
        return ""
    words = trimmed.split()
    if len(words) <= max_words:
        return trimmed
    return " ".join(words[:max_words]) + "..."


def _split_long_paragraph(paragraph: str, max_chars: int) -> List[str]:
    pieces: List[str] = []
    buffer = ""
    for sentence in split_sentences(paragraph):
        candidate = buffer + sentence
        if len(candidate.strip()) > max_chars and buffer.strip():
            pieces.append(buffer)
            buffer = sentence
        else:
            buffer = candidate
    if buffer.strip():
        pieces.append(buffer)

    fragments: List[str] = []
    for piece in pieces:
        fragments.extend(hard_split_by_length(piece, max_chars))
    return fragments
