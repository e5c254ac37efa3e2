import asyncio
import random
import threading
import time

import pytest

from audiobook_pipeline.chunks import ChunkStore
from audiobook_pipeline.errors import BatchFailedError, TtsTransientError, TtsValidationError
from audiobook_pipeline.orchestrator import (
    GenerationConfig,
    GenerationOrchestrator,
    ProsodySettings,
    SynthesisRequest,
)
from audiobook_pipeline.snapshot import BatchSnapshot, InMemorySnapshotStore, SnapshotChunk
from audiobook_pipeline.tts_engine import MockTtsEngine, SynthesisResult, TtsEngine

REQUEST = SynthesisRequest(voice="DUONG_QUA", style="general")


def _orchestrator(engine, sleeps=None, **config):
    recorded = sleeps if sleeps is not None else []

    async def fake_sleep(delay):
        recorded.append(delay)

    return GenerationOrchestrator(
        engine,
        GenerationConfig(**config),
        snapshot_store=InMemorySnapshotStore(),
        sleep=fake_sleep,
        rng=random.Random(0),
    )


def _store(texts):
    store = ChunkStore()
    store.initialize(texts)
    return store


def test_batch_continues_past_a_failing_chunk():
    texts = ["Chunk one.", "Chunk two.", "Chunk three.", "Chunk four.", "Chunk five."]
    engine = MockTtsEngine(fail_texts={"Chunk two.": TtsTransientError("unavailable")})
    sleeps = []
    orchestrator = _orchestrator(engine, sleeps, concurrency=3, max_retries=2)
    store = _store(texts)
    progress = []

    outcome = asyncio.run(orchestrator.run_batch(store, REQUEST, on_progress=progress.append))

    assert outcome.completed == [1, 3, 4, 5]
    assert outcome.failed == [2]
    assert outcome.progress == 100
    assert not outcome.is_running
    assert not outcome.succeeded
    # One attempt plus two retries for the failing chunk.
    assert engine.calls.count("Chunk two.") == 3
    assert len(sleeps) == 2
    assert [p.attempted for p in progress] == [1, 2, 3, 4, 5]

    snapshot = orchestrator.snapshot_store.load()
    assert snapshot.completed_chunk_ids == [1, 3, 4, 5]
    assert snapshot.failed_chunk_ids == [2]
    assert snapshot.progress == 100
    assert not snapshot.is_running
    assert not store.get(2).has_audio


def test_successful_batch_clears_snapshot():
    engine = MockTtsEngine()
    orchestrator = _orchestrator(engine)
    store = _store(["a.", "b.", "c."])

    outcome = asyncio.run(orchestrator.run_batch(store, REQUEST, file_name="book.txt"))

    assert outcome.succeeded
    assert store.all_generated()
    assert orchestrator.snapshot_store.load() is None
    assert orchestrator.snapshot_store.saves >= 4


def test_batch_skips_chunks_with_audio():
    engine = MockTtsEngine()
    orchestrator = _orchestrator(engine)
    store = _store(["a.", "b."])
    asyncio.run(orchestrator.generate_chunk(store, 1, REQUEST))

    outcome = asyncio.run(orchestrator.run_batch(store, REQUEST))

    assert engine.calls == ["a.", "b."]
    assert outcome.selected == 1
    assert outcome.completed == [1, 2]


def test_batch_raises_when_every_chunk_fails():
    error = TtsValidationError("rejected")
    engine = MockTtsEngine(fail_texts={"a.": error, "b.": error})
    orchestrator = _orchestrator(engine)

    with pytest.raises(BatchFailedError) as info:
        asyncio.run(orchestrator.run_batch(_store(["a.", "b."]), REQUEST))

    assert info.value.failed_ids == [1, 2]
    # Validation errors are never retried.
    assert engine.calls.count("a.") == 1


def test_empty_batch_is_a_noop():
    engine = MockTtsEngine()
    outcome = asyncio.run(_orchestrator(engine).run_batch(ChunkStore(), REQUEST))

    assert outcome.selected == 0
    assert outcome.progress == 100
    assert engine.calls == []


def test_validation_happens_before_any_engine_call():
    engine = MockTtsEngine()
    orchestrator = _orchestrator(engine)

    with pytest.raises(TtsValidationError):
        asyncio.run(orchestrator.synthesize_text("   ", REQUEST))
    with pytest.raises(TtsValidationError):
        asyncio.run(orchestrator.synthesize_text("a" * 5001, REQUEST))

    bad = SynthesisRequest("DUONG_QUA", "general", ProsodySettings(enabled=True, rate="5"))
    with pytest.raises(TtsValidationError):
        asyncio.run(orchestrator.synthesize_text("hello", bad))
    with pytest.raises(TtsValidationError):
        asyncio.run(orchestrator.run_batch(_store(["hello"]), bad))

    assert engine.calls == []


def test_oversized_multibyte_text_is_measured_in_bytes():
    engine = MockTtsEngine()
    # 2000 characters, 6000 UTF-8 bytes.
    with pytest.raises(TtsValidationError):
        asyncio.run(_orchestrator(engine).synthesize_text("ấ" * 2000, REQUEST))
    assert engine.calls == []


def test_transient_errors_retry_with_bounded_backoff():
    engine = MockTtsEngine(transient_failures={"hello": 3})
    sleeps = []
    orchestrator = _orchestrator(engine, sleeps, max_retries=4)

    result = asyncio.run(orchestrator.synthesize_text("hello", REQUEST))

    assert result.audio
    assert len(engine.calls) == 4
    assert len(sleeps) == 3
    for attempt, delay in enumerate(sleeps):
        raw = min(8.0, 0.5 * 2.0 ** attempt)
        assert raw * 0.7 <= delay <= raw * 1.3


def test_retries_exhausted_raises_transient_error():
    engine = MockTtsEngine(transient_failures={"hello": 10})
    orchestrator = _orchestrator(engine, max_retries=1)

    with pytest.raises(TtsTransientError):
        asyncio.run(orchestrator.synthesize_text("hello", REQUEST))
    assert len(engine.calls) == 2


class _SlowEngine(TtsEngine):
    def __init__(self):
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.inner = MockTtsEngine()

    def synthesize(self, text, voice_id, prosody):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(0.05)
            return self.inner.synthesize(text, voice_id, prosody)
        finally:
            with self._lock:
                self.active -= 1


def test_concurrency_is_bounded():
    engine = _SlowEngine()
    orchestrator = _orchestrator(engine, concurrency=3)
    store = _store([f"Chunk {i}." for i in range(8)])

    outcome = asyncio.run(orchestrator.run_batch(store, REQUEST))

    assert len(outcome.completed) == 8
    assert 1 < engine.max_active <= 3


def test_stop_finishes_in_flight_work_and_keeps_snapshot():
    engine = MockTtsEngine()
    orchestrator = _orchestrator(engine, concurrency=1)
    store = _store(["a.", "b.", "c.", "d."])

    outcome = asyncio.run(
        orchestrator.run_batch(store, REQUEST, on_progress=lambda _: orchestrator.stop())
    )

    assert outcome.stopped
    assert outcome.completed == [1]
    assert outcome.progress == 25
    assert engine.calls == ["a."]
    snapshot = orchestrator.snapshot_store.load()
    assert snapshot is not None
    assert not snapshot.is_running


def _snapshot(texts, completed):
    return BatchSnapshot(
        chunks=[SnapshotChunk(id=i, text=t) for i, t in enumerate(texts, start=1)],
        voice=REQUEST.voice,
        style=REQUEST.style,
        completed_chunk_ids=completed,
    )


def test_resume_regenerates_completed_chunks_without_audio():
    engine = MockTtsEngine()
    orchestrator = _orchestrator(engine)
    store = ChunkStore()

    outcome = asyncio.run(orchestrator.resume(store, _snapshot(["A.", "B.", "C."], [1])))

    assert sorted(engine.calls) == ["A.", "B.", "C."]
    assert outcome.completed == [1, 2, 3]
    assert store.all_generated()


def test_resume_keeps_live_audio_with_same_settings():
    engine = MockTtsEngine()
    orchestrator = _orchestrator(engine)
    store = _store(["A.", "B.", "C."])
    asyncio.run(orchestrator.generate_chunk(store, 1, REQUEST))

    asyncio.run(orchestrator.resume(store, _snapshot(["A.", "B.", "C."], [1])))

    assert engine.calls[0] == "A."
    assert sorted(engine.calls[1:]) == ["B.", "C."]
    assert store.all_generated()


def test_generate_chunk_discards_audio_when_text_changes_mid_flight():
    store = _store(["original"])

    class _EditingEngine(MockTtsEngine):
        def synthesize(self, text, voice_id, prosody):
            result = super().synthesize(text, voice_id, prosody)
            store.update_text(1, "edited")
            return result

    orchestrator = _orchestrator(_EditingEngine())

    assert not asyncio.run(orchestrator.generate_chunk(store, 1, REQUEST))
    assert not store.get(1).has_audio
    assert not store.get(1).processing


def test_preview_is_short_and_reused():
    engine = MockTtsEngine()
    orchestrator = _orchestrator(engine)
    words = " ".join(f"word{i}" for i in range(50))
    store = _store([words])

    first = asyncio.run(orchestrator.preview_chunk(store, 1, REQUEST))
    second = asyncio.run(orchestrator.preview_chunk(store, 1, REQUEST))

    assert first is second
    assert len(engine.calls) == 1
    assert engine.calls[0].endswith("...")
    assert len(engine.calls[0].split()) == 30

    other = SynthesisRequest(voice="TIEU_LONG_NU", style="news")
    third = asyncio.run(orchestrator.preview_chunk(store, 1, other))
    assert third is not first
    assert first.released


class _HangingEngine(MockTtsEngine):
    def list_voices(self):
        time.sleep(0.5)
        return ["vi-VN-Standard-A"]


class _BrokenEngine(MockTtsEngine):
    def list_voices(self):
        raise ConnectionError("offline")


def test_health_check_and_voice_listing():
    assert asyncio.run(_orchestrator(MockTtsEngine()).check_health())
    assert not asyncio.run(_orchestrator(_HangingEngine()).check_health(timeout=0.05))
    assert not asyncio.run(_orchestrator(_BrokenEngine()).check_health())

    listed = _orchestrator(MockTtsEngine(voices=["vi-VN-Standard-A", "en-US-X"]))
    assert asyncio.run(listed.available_voices()) == ["vi-VN-Standard-A"]

    fallback = asyncio.run(_orchestrator(_BrokenEngine()).available_voices())
    assert len(fallback) == 4


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("TTS_MAX_RETRIES", "2")
    monkeypatch.setenv("TTS_RETRY_BASE_MS", "250")
    monkeypatch.setenv("TTS_CONCURRENCY", "nope")

    config = GenerationConfig.from_env()

    assert config.max_retries == 2
    assert config.initial_retry_delay == 0.25
    assert config.concurrency == 3


def test_failing_progress_callback_does_not_abort_batch():
    engine = MockTtsEngine()
    orchestrator = _orchestrator(engine, concurrency=1)
    store = _store(["a.", "b.", "c.", "d.", "e."])
    seen = []

    def on_progress(progress):
        seen.append(progress.attempted)
        raise RuntimeError("display went away")

    outcome = asyncio.run(orchestrator.run_batch(store, REQUEST, on_progress=on_progress))

    assert engine.calls == ["a.", "b.", "c.", "d.", "e."]
    assert seen == [1, 2, 3, 4, 5]
    assert outcome.completed == [1, 2, 3, 4, 5]
    assert outcome.succeeded


def test_outcomes_use_ids_current_after_generation():
    store = _store(["head.", "gone.", "tail."])

    class _DeletingEngine(MockTtsEngine):
        def synthesize(self, text, voice_id, prosody):
            if text == "head.":
                store.delete(2)
            return super().synthesize(text, voice_id, prosody)

    engine = _DeletingEngine(fail_texts={"tail.": TtsValidationError("rejected")})
    orchestrator = _orchestrator(engine, concurrency=1)

    outcome = asyncio.run(orchestrator.run_batch(store, REQUEST))

    # "tail." moved from id 3 to id 2; "gone." was dequeued but left the store.
    assert store.texts() == ["head.", "tail."]
    assert outcome.completed == [1]
    assert outcome.failed == [2]
    assert "rejected" in outcome.errors[2]
