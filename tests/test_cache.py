import asyncio
import os
import time

from audiobook_pipeline.cache import (
    BYTES_PER_GB,
    CacheConfig,
    CachedTtsEngine,
    CachePruner,
    SynthesisCache,
    cache_key,
)
from audiobook_pipeline.styles import Prosody
from audiobook_pipeline.tts_engine import MockTtsEngine, SynthesisResult

PROSODY = Prosody(rate=1.0, pitch="0st", break_time="300ms")


def _result():
    return SynthesisResult(audio=b"\x01" * 64, mime_type="audio/wav", prosody=PROSODY)


def test_cache_key_depends_on_ssml_and_voice():
    assert cache_key("<speak>a</speak>", "v1") == cache_key("<speak>a</speak>", "v1")
    assert cache_key("<speak>a</speak>", "v1") != cache_key("<speak>a</speak>", "v2")
    assert cache_key("<speak>a</speak>", "v1") != cache_key("<speak>b</speak>", "v1")


def test_cached_engine_serves_repeat_requests(tmp_path):
    inner = MockTtsEngine()
    engine = CachedTtsEngine(inner, SynthesisCache(tmp_path))

    first = engine.synthesize("Xin chào", "vi-VN-Standard-B", PROSODY)
    second = engine.synthesize("Xin chào", "vi-VN-Standard-B", PROSODY)
    engine.synthesize("Xin chào", "vi-VN-Standard-A", PROSODY)

    assert inner.calls == ["Xin chào", "Xin chào"]
    assert second.audio == first.audio
    assert second.prosody == PROSODY
    assert len(SynthesisCache(tmp_path).entries()) == 2


def test_unreadable_entry_is_a_miss(tmp_path):
    cache = SynthesisCache(tmp_path)
    cache.path_for("broken").write_text("{", encoding="utf-8")

    assert cache.get("broken") is None
    assert cache.get("absent") is None


def test_pruner_expires_old_entries(tmp_path):
    cache = SynthesisCache(tmp_path)
    now = time.time()
    old = cache.put("old", _result())
    cache.put("new", _result())
    os.utime(old, (now - 8 * 86400, now - 8 * 86400))

    report = CachePruner(cache, CacheConfig(directory=tmp_path), clock=lambda: now).run_once()

    assert report.expired == 1
    assert not old.exists()
    assert cache.get("new") is not None


def test_pruner_evicts_oldest_when_over_size(tmp_path):
    cache = SynthesisCache(tmp_path)
    now = time.time()
    paths = [cache.put(name, _result()) for name in ("a", "b", "c")]
    for age, path in zip((30, 20, 10), paths):
        os.utime(path, (now - age, now - age))
    size = paths[0].stat().st_size
    config = CacheConfig(directory=tmp_path, max_gb=size * 1.5 / BYTES_PER_GB)

    report = CachePruner(cache, config, clock=lambda: now).run_once()

    assert report.evicted == 2
    assert [p.exists() for p in paths] == [False, False, True]


def test_disabled_pruner_does_nothing(tmp_path):
    cache = SynthesisCache(tmp_path)
    path = cache.put("a", _result())
    os.utime(path, (0, 0))

    report = CachePruner(cache, CacheConfig(enabled=False, directory=tmp_path)).run_once()

    assert report.expired == 0
    assert path.exists()


def test_run_periodically_sleeps_between_runs(tmp_path):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    pruner = CachePruner(SynthesisCache(tmp_path), CacheConfig(directory=tmp_path), sleep=fake_sleep)

    runs = asyncio.run(pruner.run_periodically(max_runs=3))

    assert runs == 3
    assert sleeps == [3600, 3600]


def test_cache_config_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("CACHE_ENABLED", "false")
    monkeypatch.setenv("CACHE_TTL_DAYS", "3")
    monkeypatch.setenv("CACHE_MAX_GB", "bad")

    config = CacheConfig.from_env(tmp_path)

    assert not config.enabled
    assert config.ttl_seconds == 3 * 86400
    assert config.max_gb == 2
    assert config.directory == tmp_path
