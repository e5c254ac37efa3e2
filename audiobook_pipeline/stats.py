from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

__all__ = ["CreditRates", "TextStats", "calculate_text_stats"]


@dataclass(frozen=True)
class CreditRates:
    """Estimated provider prices. TTS is per 1M characters, Gemini per 1M tokens."""

    tts_per_million_chars: float = 4.0
    gemini_per_million_tokens: float = 0.075
    chars_per_token: float = 4.0


@dataclass(frozen=True)
class TextStats:
    original_characters: int
    cleaned_characters: int
    chunk_count: int
    avg_chars_per_chunk: int
    expected_tts_requests: int
    tts_credits: float
    gemini_credits: Optional[float]
    total_credits: float


def calculate_text_stats(
    original_text: str,
    cleaned_text: str,
    chunks: Sequence[str],
    *,
    use_dialect: bool = False,
    rates: Optional[CreditRates] = None,
) -> TextStats:
    rates = rates or CreditRates()
    cleaned_chars = len(cleaned_text)
    chunk_count = len(chunks)

    tts_credits = cleaned_chars / 1_000_000 * rates.tts_per_million_chars
    gemini_credits = None
    if use_dialect:
        tokens = cleaned_chars / rates.chars_per_token
        gemini_credits = tokens / 1_000_000 * rates.gemini_per_million_tokens

    return TextStats(
        original_characters=len(original_text),
        cleaned_characters=cleaned_chars,
        chunk_count=chunk_count,
        avg_chars_per_chunk=round(cleaned_chars / chunk_count) if chunk_count else 0,
        expected_tts_requests=chunk_count,
        tts_credits=tts_credits,
        gemini_credits=gemini_credits,
        total_credits=tts_credits + (gemini_credits or 0.0),
    )
