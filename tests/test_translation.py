import json
from types import SimpleNamespace

import pytest

from audiobook_pipeline.errors import TranslationError
from audiobook_pipeline.translation import (
    CachedDialectTranslator,
    DialectTranslator,
    GeminiDialectTranslator,
    TranslationCache,
    translation_cache_key,
)


class _FakeModels:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.prompts = []

    def generate_content(self, model, contents):
        self.prompts.append(contents)
        piece = contents.split("\n\n", 1)[1]
        if self.fail_on and self.fail_on in piece:
            raise RuntimeError("quota exceeded")
        return SimpleNamespace(text=f"[{piece}]")


def test_gemini_translator_sends_pieces_with_style_prompt():
    models = _FakeModels()
    translator = GeminiDialectTranslator(api_key="", client=SimpleNamespace(models=models), max_chars=10)

    result = translator.translate("One. Two. Three.", "news")

    assert result == "[One. Two.] [Three.]"
    assert len(models.prompts) == 2
    assert "Sài Gòn" in models.prompts[0]


def test_gemini_translator_keeps_original_text_on_failure():
    models = _FakeModels(fail_on="Three")
    translator = GeminiDialectTranslator(api_key="", client=SimpleNamespace(models=models), max_chars=10)

    assert translator.translate("One. Two. Three.", "general") == "[One. Two.] Three."


def test_gemini_translator_requires_key():
    with pytest.raises(TranslationError):
        GeminiDialectTranslator(api_key="")


def test_cache_evicts_oldest_entry():
    cache = TranslationCache(limit=2)
    cache.put("a", "1")
    cache.put("b", "2")
    cache.put("c", "3")

    assert len(cache) == 2
    assert "a" not in cache
    assert cache.get("c") == "3"


def test_cache_persists_to_disk(tmp_path):
    path = tmp_path / "dialect.json"
    cache = TranslationCache(path=path)
    cache.put("key", "giá trị")

    assert json.loads(path.read_text(encoding="utf-8")) == {"key": "giá trị"}
    assert TranslationCache(path=path).get("key") == "giá trị"

    path.write_text("[broken", encoding="utf-8")
    assert len(TranslationCache(path=path)) == 0


class _CountingTranslator(DialectTranslator):
    def __init__(self):
        self.calls = 0

    def translate(self, text, style):
        self.calls += 1
        return text.upper()


def test_cached_translator_memoizes_by_text_and_style():
    inner = _CountingTranslator()
    translator = CachedDialectTranslator(inner, TranslationCache())

    assert translator.translate("xin chào", "news") == "XIN CHÀO"
    assert translator.translate("xin chào", "news") == "XIN CHÀO"
    translator.translate("xin chào", "literature")

    assert inner.calls == 2
    assert translation_cache_key("a", "news") != translation_cache_key("a", "general")
