from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Optional

from .errors import TranslationError
from .segmenter import DEFAULT_TRANSLATION_CHARS, split_for_translation
from .styles import DEFAULT_STYLE

logger = logging.getLogger(__name__)

__all__ = [
    "DialectTranslator",
    "GeminiDialectTranslator",
    "TranslationCache",
    "CachedDialectTranslator",
    "translation_cache_key",
]

DEFAULT_CACHE_LIMIT = 300

STYLE_PROMPTS = {
    "literature": (
        "Chuyển sang phương ngữ Nam Bộ dân dã, giàu hình ảnh, dùng từ 'hổng', 'thiệt', "
        "'dữ à', 'nghen'. Giữ phong cách kể chuyện truyền cảm. Giữ nguyên ý chính, không thêm lời dẫn."
    ),
    "news": (
        "Chuyển sang phương ngữ Nam Bộ chuẩn mực (Sài Gòn), rõ ràng, hiện đại. Tránh từ cổ hủ. "
        "Giữ nguyên ý chính, không thêm lời dẫn."
    ),
    "formal": (
        "Chuyển sang tiếng Việt phong cách miền Nam lịch sự, chuyên nghiệp. Trang trọng nhưng giữ "
        "nét đặc trưng vùng miền. Giữ nguyên ý chính, không thêm lời dẫn."
    ),
    "general": (
        "Chuyển sang phương ngữ Nam Bộ tự nhiên, gần gũi. Giữ nguyên ý chính, không thêm lời dẫn."
    ),
}


def translation_cache_key(text: str, style: str) -> str:
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"{style}:{digest}"


class DialectTranslator(ABC):
    @abstractmethod
    def translate(self, text: str, style: str) -> str:
        """
        Rewrite ``text`` in the target dialect using the tone of ``style``.
        """


class GeminiDialectTranslator(DialectTranslator):
    """
    Dialect rewriting through the ``google-genai`` client.

    Text is sent in sentence-aligned pieces of bounded size. A piece whose
    request fails is kept untranslated so one bad request never loses text.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gemini-2.0-flash",
        max_chars: int = DEFAULT_TRANSLATION_CHARS,
        client: Optional[object] = None,
    ) -> None:
        if client is None and not api_key:
            raise TranslationError("A Gemini API key is required for dialect conversion.")
        if client is None:
            try:
                from google import genai  # type: ignore
            except ImportError as exc:  # pragma: no cover - optional dependency
                raise RuntimeError(
                    "google-genai is required for GeminiDialectTranslator but is not installed."
                ) from exc
            client = genai.Client(api_key=api_key)

        self._client = client
        self._model = model
        self._max_chars = max_chars

    def translate(self, text: str, style: str) -> str:
        if not text or not text.strip():
            return text

        prompt = STYLE_PROMPTS.get(style, STYLE_PROMPTS[DEFAULT_STYLE])
        pieces = split_for_translation(text, self._max_chars)
        translated = []
        for index, piece in enumerate(pieces, start=1):
            try:
                response = self._client.models.generate_content(  # type: ignore[attr-defined]
                    model=self._model,
                    contents=f"{prompt}\n\n{piece}",
                )
                translated.append((getattr(response, "text", None) or piece).strip())
            except Exception as exc:
                logger.warning(
                    "Dialect conversion failed for piece %d/%d; keeping original text: %s",
                    index,
                    len(pieces),
                    exc,
                )
                translated.append(piece)
        return " ".join(translated).strip()


class TranslationCache:
    """
    Bounded translation memo. When full, the oldest entry is evicted. With a
    ``path`` the whole cache is written to a JSON file after every insert.
    """

    def __init__(self, limit: int = DEFAULT_CACHE_LIMIT, path: Optional[Path] = None) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive.")
        self.limit = limit
        self.path = path
        self._entries: "OrderedDict[str, str]" = OrderedDict()
        if path is not None:
            self._load()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[str]:
        return self._entries.get(key)

    def put(self, key: str, value: str) -> None:
        self._entries[key] = value
        while len(self._entries) > self.limit:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted translation cache entry %s", evicted)
        self._save()

    def _load(self) -> None:
        assert self.path is not None
        if not self.path.exists():
            return
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load translation cache %s: %s", self.path, exc)
            return
        if not isinstance(payload, dict):
            return
        for key, value in payload.items():
            if isinstance(value, str):
                self._entries[key] = value
        while len(self._entries) > self.limit:
            self._entries.popitem(last=False)

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(dict(self._entries), ensure_ascii=False), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to save translation cache %s: %s", self.path, exc)


class CachedDialectTranslator(DialectTranslator):
    def __init__(self, translator: DialectTranslator, cache: TranslationCache) -> None:
        self.translator = translator
        self.cache = cache

    def translate(self, text: str, style: str) -> str:
        key = translation_cache_key(text, style)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        result = self.translator.translate(text, style)
        self.cache.put(key, result)
        return result
