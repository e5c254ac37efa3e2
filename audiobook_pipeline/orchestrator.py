from __future__ import annotations

import asyncio
import logging
import os
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .chunks import AudioHandle, Chunk, ChunkStore, Fingerprint
from .errors import BatchFailedError, TtsTransientError, TtsValidationError
from .segmenter import extract_preview_text
from .snapshot import BatchSnapshot, SnapshotChunk, SnapshotStore
from .styles import (
    VOICES,
    Prosody,
    parse_prosody_override,
    resolve_prosody,
    resolve_voice,
    validate_prosody,
)
from .tts_engine import SynthesisResult, TtsEngine, classify_error

logger = logging.getLogger(__name__)

__all__ = [
    "GenerationConfig",
    "ProsodySettings",
    "SynthesisRequest",
    "BatchProgress",
    "BatchOutcome",
    "GenerationOrchestrator",
]


@dataclass
class GenerationConfig:
    """
    Limits and retry policy for synthesis requests.
    """

    concurrency: int = 3
    max_retries: int = 4
    initial_retry_delay: float = 0.5
    retry_backoff_factor: float = 2.0
    max_retry_delay: float = 8.0
    max_input_bytes: int = 5000
    max_chunk_chars: int = 3000
    health_timeout: float = 3.5

    @classmethod
    def from_env(cls) -> "GenerationConfig":
        config = cls()
        config.max_retries = _env_int("TTS_MAX_RETRIES", config.max_retries)
        config.initial_retry_delay = _env_int("TTS_RETRY_BASE_MS", 500) / 1000
        config.max_retry_delay = _env_int("TTS_RETRY_MAX_MS", 8000) / 1000
        config.concurrency = max(1, _env_int("TTS_CONCURRENCY", config.concurrency))
        return config


@dataclass(frozen=True)
class ProsodySettings:
    """User-entered prosody override fields, kept as strings until parsed."""

    enabled: bool = False
    rate: str = ""
    pitch: str = ""
    break_ms: str = ""

    def override(self) -> Optional[Dict[str, object]]:
        return parse_prosody_override(self.enabled, self.rate, self.pitch, self.break_ms)


@dataclass(frozen=True)
class SynthesisRequest:
    voice: str
    style: str
    prosody_settings: ProsodySettings = ProsodySettings()

    @property
    def voice_id(self) -> str:
        return resolve_voice(self.voice)

    @property
    def prosody_override(self) -> Optional[Dict[str, object]]:
        return self.prosody_settings.override()

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint.of(self.voice_id, self.style, self.prosody_override)

    def prosody(self) -> Prosody:
        return resolve_prosody(self.style, self.voice_id, self.prosody_override)

    @classmethod
    def from_snapshot(cls, snapshot: BatchSnapshot) -> "SynthesisRequest":
        return cls(
            voice=snapshot.voice,
            style=snapshot.style,
            prosody_settings=ProsodySettings(
                enabled=snapshot.advanced_prosody_enabled,
                rate=snapshot.custom_rate,
                pitch=snapshot.custom_pitch,
                break_ms=snapshot.custom_break_ms,
            ),
        )


@dataclass
class BatchProgress:
    progress: int
    attempted: int
    total: int
    completed: List[int]
    failed: List[int]


@dataclass
class BatchOutcome:
    completed: List[int]
    failed: List[int]
    selected: int
    progress: int
    stopped: bool = False
    is_running: bool = False
    errors: Dict[int, str] = field(default_factory=dict)
    snapshot: Optional[BatchSnapshot] = None

    @property
    def succeeded(self) -> bool:
        return not self.failed and not self.stopped


ProgressCallback = Callable[[BatchProgress], None]
HandleFactory = Callable[[bytes, str], AudioHandle]


class GenerationOrchestrator:
    """
    Drives chunk synthesis against a ``TtsEngine``.

    The engine is blocking and is always called through ``asyncio.to_thread``;
    all bookkeeping happens on the event loop. ``sleep`` and ``rng`` exist so
    tests can run retries without waiting.
    """

    def __init__(
        self,
        engine: TtsEngine,
        config: Optional[GenerationConfig] = None,
        *,
        snapshot_store: Optional[SnapshotStore] = None,
        handle_factory: HandleFactory = AudioHandle,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.engine = engine
        self.config = config or GenerationConfig()
        self.snapshot_store = snapshot_store
        self._handle_factory = handle_factory
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Stop dequeuing; requests already in flight finish and are recorded."""
        if self._running:
            logger.info("Batch stop requested.")
        self._running = False

    async def synthesize_text(self, text: str, request: SynthesisRequest) -> SynthesisResult:
        """
        Single-shot synthesis with input validation and transient-error retry.

        Raises TtsValidationError without contacting the engine for empty or
        oversized text and for invalid prosody.
        """
        if not text or not text.strip():
            raise TtsValidationError("Text is empty.")
        size = len(text.encode("utf-8"))
        if size > self.config.max_input_bytes:
            raise TtsValidationError(
                f"Text is {size} bytes; the provider accepts at most {self.config.max_input_bytes}."
            )
        prosody = request.prosody()
        validate_prosody(prosody)
        voice_id = request.voice_id

        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(self.engine.synthesize, text, voice_id, prosody)
            except Exception as exc:
                error = classify_error(exc)
                if not isinstance(error, TtsTransientError):
                    if error is exc:
                        raise
                    raise error from exc
                if attempt >= self.config.max_retries:
                    logger.error("Synthesis permanently failed after %d attempts.", attempt + 1)
                    if error is exc:
                        raise
                    raise error from exc
                delay = self._retry_delay(attempt)
                logger.warning(
                    "Synthesis failed (attempt %d/%d, rate_limited=%s). Retrying in %.2fs: %s",
                    attempt + 1,
                    self.config.max_retries + 1,
                    error.rate_limited,
                    delay,
                    error,
                )
                await self._sleep(delay)
                attempt += 1

    async def generate_chunk(self, store: ChunkStore, chunk_id: int, request: SynthesisRequest) -> bool:
        """
        Synthesize one chunk and install the audio on it.

        Returns False when the chunk is unknown or its text changed while the
        request was in flight (the fresh audio is then released).
        """
        chunk = store.get(chunk_id)
        if chunk is None:
            return False
        return await self._generate(store, chunk, request)

    async def preview_chunk(
        self,
        store: ChunkStore,
        chunk_id: int,
        request: SynthesisRequest,
        *,
        max_words: int = 30,
    ) -> Optional[AudioHandle]:
        """
        Short sample of a chunk read with the current settings. A preview made
        with the same fingerprint is reused.
        """
        chunk = store.get(chunk_id)
        if chunk is None:
            return None
        fingerprint = request.fingerprint
        if (
            chunk.preview_handle is not None
            and not chunk.preview_handle.released
            and chunk.preview_fingerprint == fingerprint
        ):
            return chunk.preview_handle

        source_text = chunk.text
        preview_text = extract_preview_text(source_text, max_words=max_words)
        store.set_previewing(chunk, True)
        try:
            result = await self.synthesize_text(preview_text, request)
        finally:
            store.set_previewing(chunk, False)
        handle = self._handle_factory(result.audio, result.mime_type)
        if not store.attach_preview(chunk, handle, fingerprint, source_text=source_text):
            return None
        return handle

    async def run_batch(
        self,
        store: ChunkStore,
        request: SynthesisRequest,
        *,
        on_progress: Optional[ProgressCallback] = None,
        file_name: Optional[str] = None,
        use_dialect: bool = False,
    ) -> BatchOutcome:
        """
        Generate every chunk that has text but no valid audio.

        A fixed pool of ``config.concurrency`` workers drains a FIFO queue. A
        failing chunk is recorded and the batch continues. Progress (attempted
        over selected) is reported and checkpointed after every chunk. Raises
        BatchFailedError only when chunks were selected and none succeeded.
        """
        validate_prosody(request.prosody())
        selected = [c for c in store if c.text.strip() and not c.has_audio]
        completed: Set[int] = {c.id for c in store if c.has_audio}
        failed: Set[int] = set()
        errors: Dict[int, str] = {}
        total = len(selected)
        attempted = 0
        succeeded = 0

        base_snapshot = BatchSnapshot(
            chunks=[
                SnapshotChunk(id=c.id, text=c.text, dialect_converted=c.dialect_converted)
                for c in store
            ],
            voice=request.voice,
            style=request.style,
            file_name=file_name,
            use_dialect=use_dialect,
            advanced_prosody_enabled=request.prosody_settings.enabled,
            custom_rate=request.prosody_settings.rate,
            custom_pitch=request.prosody_settings.pitch,
            custom_break_ms=request.prosody_settings.break_ms,
        )

        def progress_value() -> int:
            return round(attempted / total * 100) if total else 100

        def checkpoint(is_running: bool) -> BatchSnapshot:
            snapshot = base_snapshot.with_progress(
                completed=list(completed),
                failed=list(failed),
                progress=progress_value(),
                is_running=is_running,
            )
            self._persist(snapshot)
            return snapshot

        logger.info(
            "Starting batch: %d of %d chunks need audio (concurrency=%d).",
            total,
            len(store),
            self.config.concurrency,
        )
        self._running = True
        checkpoint(is_running=True)

        queue: asyncio.Queue = asyncio.Queue()
        for chunk in selected:
            queue.put_nowait(chunk)

        async def worker(worker_id: int) -> None:
            nonlocal attempted, succeeded
            while self._running:
                try:
                    chunk: Chunk = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                error: Optional[str] = None
                try:
                    attached = await self._generate(store, chunk, request)
                except Exception as exc:
                    attached = False
                    error = str(exc) or exc.__class__.__name__
                else:
                    if not attached:
                        error = "Chunk changed while its audio was being generated."
                finally:
                    queue.task_done()

                # Ids can be re-densed during the await.
                chunk_id = chunk.id
                if attached:
                    succeeded += 1
                    completed.add(chunk_id)
                    failed.discard(chunk_id)
                else:
                    errors[chunk_id] = error or "Unknown error."
                    logger.error("Chunk %d failed: %s", chunk_id, errors[chunk_id])
                    failed.add(chunk_id)
                    completed.discard(chunk_id)
                attempted += 1
                logger.debug("Worker %d finished chunk %d (%d/%d).", worker_id, chunk_id, attempted, total)

                checkpoint(is_running=True)
                if on_progress is not None:
                    self._notify(
                        on_progress,
                        BatchProgress(
                            progress=progress_value(),
                            attempted=attempted,
                            total=total,
                            completed=sorted(completed),
                            failed=sorted(failed),
                        ),
                    )

        worker_count = min(max(1, self.config.concurrency), total)
        try:
            await asyncio.gather(*(worker(i) for i in range(worker_count)))
        finally:
            stopped = not self._running and attempted < total
            self._running = False
            final = checkpoint(is_running=False)

        logger.info(
            "Batch finished: %d completed, %d failed, %d not attempted.",
            succeeded,
            len(failed),
            total - attempted,
        )
        if total and not failed and not stopped and self.snapshot_store is not None:
            self.snapshot_store.clear()

        if total and succeeded == 0 and not stopped:
            raise BatchFailedError(
                f"None of the {total} selected chunks could be generated.", failed_ids=failed
            )

        return BatchOutcome(
            completed=sorted(completed),
            failed=sorted(failed),
            selected=total,
            progress=final.progress,
            stopped=stopped,
            is_running=False,
            errors=errors,
            snapshot=final,
        )

    async def resume(
        self,
        store: ChunkStore,
        snapshot: BatchSnapshot,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchOutcome:
        """
        Rebuild ``store`` from a saved batch and continue it.

        Audio is not part of a snapshot, so a chunk recorded as completed is
        skipped only while it still holds a live handle made with the same
        settings; otherwise it is generated again.
        """
        request = SynthesisRequest.from_snapshot(snapshot)
        store.initialize(
            [c.text for c in snapshot.chunks],
            fingerprint=request.fingerprint,
            dialect_flags=[c.dialect_converted for c in snapshot.chunks],
        )
        recorded = set(snapshot.completed_chunk_ids)
        missing = [c.id for c in store if c.id in recorded and not c.has_audio]
        if missing:
            logger.info("Regenerating %d chunks recorded as completed but without audio.", len(missing))
        return await self.run_batch(
            store,
            request,
            on_progress=on_progress,
            file_name=snapshot.file_name,
            use_dialect=snapshot.use_dialect,
        )

    async def check_health(self, timeout: Optional[float] = None) -> bool:
        """Bounded liveness probe; expiry or any error means "unavailable"."""
        timeout = self.config.health_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(asyncio.to_thread(self.engine.list_voices), timeout)
        except asyncio.TimeoutError:
            logger.warning("TTS health check timed out after %.1fs.", timeout)
            return False
        except Exception as exc:
            logger.warning("TTS health check failed: %s", exc)
            return False
        return True

    async def available_voices(self, timeout: Optional[float] = None) -> List[str]:
        """
        Configured voices the provider reports as supported. When the provider
        does not answer in time every configured voice is assumed available.
        """
        timeout = self.config.health_timeout if timeout is None else timeout
        configured = [info.technical_name for info in VOICES.values()]
        try:
            listed = await asyncio.wait_for(asyncio.to_thread(self.engine.list_voices), timeout)
        except asyncio.TimeoutError:
            logger.warning("Voice listing timed out; assuming all voices are available.")
            return configured
        except Exception as exc:
            logger.warning("Voice listing failed (%s); assuming all voices are available.", exc)
            return configured
        supported = set(listed or [])
        if not supported:
            return configured
        return [voice for voice in configured if voice in supported]

    async def _generate(self, store: ChunkStore, chunk: Chunk, request: SynthesisRequest) -> bool:
        source_text = chunk.text
        fingerprint = request.fingerprint
        store.set_processing(chunk, True)
        try:
            result = await self.synthesize_text(source_text, request)
        except Exception:
            store.set_processing(chunk, False)
            raise
        handle = self._handle_factory(result.audio, result.mime_type)
        prosody = result.prosody.to_dict() if result.prosody else None
        attached = store.attach_audio(
            chunk, handle, fingerprint, source_text=source_text, prosody=prosody
        )
        store.set_processing(chunk, False)
        return attached

    def _retry_delay(self, attempt: int) -> float:
        raw = min(
            self.config.max_retry_delay,
            self.config.initial_retry_delay * self.config.retry_backoff_factor ** attempt,
        )
        return raw * self._rng.uniform(0.7, 1.3)

    def _notify(self, callback: ProgressCallback, progress: BatchProgress) -> None:
        try:
            callback(progress)
        except Exception as exc:
            logger.warning("Progress callback failed: %s", exc)

    def _persist(self, snapshot: BatchSnapshot) -> None:
        if self.snapshot_store is None:
            return
        try:
            self.snapshot_store.save(snapshot)
        except Exception as exc:
            logger.warning("Unable to save batch snapshot: %s", exc)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r; using %s.", name, raw, default)
        return default
