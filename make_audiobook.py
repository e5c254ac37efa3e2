#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence, Tuple

from audiobook_pipeline.assembler import AudioAssembler, PydubTranscoder
from audiobook_pipeline.cache import CacheConfig, CachedTtsEngine, CachePruner, SynthesisCache
from audiobook_pipeline.chunks import ChunkStore, FileAudioHandle
from audiobook_pipeline.errors import BatchFailedError
from audiobook_pipeline.loaders import load_text
from audiobook_pipeline.metadata import MetadataBuilder
from audiobook_pipeline.normalizer import NormalizeOptions, clean_stats, normalize
from audiobook_pipeline.orchestrator import (
    BatchOutcome,
    BatchProgress,
    GenerationConfig,
    GenerationOrchestrator,
    ProsodySettings,
    SynthesisRequest,
)
from audiobook_pipeline.segmenter import segment
from audiobook_pipeline.snapshot import JsonFileSnapshotStore
from audiobook_pipeline.stats import TextStats, calculate_text_stats
from audiobook_pipeline.styles import DEFAULT_STYLE, DEFAULT_VOICE, READING_STYLES, VOICES
from audiobook_pipeline.translation import (
    CachedDialectTranslator,
    GeminiDialectTranslator,
    TranslationCache,
)
from audiobook_pipeline.tts_engine import (
    GoogleCloudTtsEngine,
    MockTtsEngine,
    PollyTtsEngine,
    TtsEngine,
)

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Turn a text, markdown, PDF or Word file into an audiobook.")
    parser.add_argument("--input", help="Input .txt, .md, .pdf or .docx file (not needed with --resume).")
    parser.add_argument("--output", default="./output/audiobook.mp3", help="Path for the merged audiobook (.mp3 or .wav).")
    parser.add_argument("--metadata-output", default="./output/metadata.json", help="Path for metadata JSON output.")
    parser.add_argument("--chunk-dir", default="./output/chunks", help="Directory to store per-chunk audio files.")
    parser.add_argument("--keep-chunks", action="store_true", help="Keep chunk files after merging.")
    parser.add_argument("--snapshot", default="./output/batch.json", help="Batch snapshot used to resume interrupted runs.")
    parser.add_argument("--resume", action="store_true", help="Resume the batch saved in --snapshot.")
    parser.add_argument("--engine", default="google", help="TTS engine to use (google, polly, mock).")
    parser.add_argument("--voice", default=DEFAULT_VOICE, help=f"Voice key or name ({', '.join(VOICES)}).")
    parser.add_argument("--style", default=DEFAULT_STYLE, help=f"Reading style ({', '.join(READING_STYLES)}).")
    parser.add_argument("--rate", default="", help="Custom speaking rate (0.5 - 2.0).")
    parser.add_argument("--pitch", default="", help="Custom pitch in semitones, e.g. -1st or +0.5st.")
    parser.add_argument("--break-ms", default="", help="Custom paragraph pause in milliseconds (100 - 2000).")
    parser.add_argument("--dialect", action="store_true", help="Rewrite the text in the Southern dialect before synthesis.")
    parser.add_argument("--api-key", help="Gemini API key for dialect conversion.")
    parser.add_argument("--gemini-model", default="gemini-2.0-flash", help="Gemini model used for dialect conversion.")
    parser.add_argument("--language-code", default="vi-VN", help="Language code passed to the engine.")
    parser.add_argument("--polly-voice-id", help="Polly voice used for every narrator when --engine=polly.")
    parser.add_argument("--polly-language-code", help="Language code hint for Polly.")
    parser.add_argument("--sample-rate", type=int, default=24000, help="Sample rate requested from the engine.")
    parser.add_argument("--max-chunk-chars", type=int, help="Maximum characters per chunk (default 3000).")
    parser.add_argument("--concurrency", type=int, help="Concurrent synthesis requests (default 3).")
    parser.add_argument("--max-retries", type=int, help="Retries per chunk for transient failures (default 4).")
    parser.add_argument("--cache-dir", default="./cache", help="Directory for the synthesis and dialect caches.")
    parser.add_argument("--no-cache", action="store_true", help="Disable the synthesis cache.")
    parser.add_argument("--debug", action="store_true", help="Enable verbose logging.")
    return parser.parse_args(argv)


def configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def create_engine(args: argparse.Namespace) -> TtsEngine:
    engine_name = (args.engine or "").lower()
    if engine_name in {"mock", "dummy"}:
        return MockTtsEngine(sample_rate=args.sample_rate)

    if engine_name in {"polly", "aws_polly"}:
        if not args.polly_voice_id:
            raise ValueError("--polly-voice-id is required when using the Polly engine.")
        voice_map = {info.technical_name: args.polly_voice_id for info in VOICES.values()}
        return PollyTtsEngine(voice_map=voice_map, language_code=args.polly_language_code)

    if engine_name in {"google", "google_cloud", "gcloud"}:
        return GoogleCloudTtsEngine(language_code=args.language_code, sample_rate=args.sample_rate)

    raise ValueError(f"Unsupported engine: {args.engine}")


def build_config(args: argparse.Namespace) -> GenerationConfig:
    config = GenerationConfig.from_env()
    if args.max_chunk_chars is not None:
        if args.max_chunk_chars <= 0:
            raise ValueError("--max-chunk-chars must be positive.")
        config.max_chunk_chars = args.max_chunk_chars
    if args.concurrency is not None:
        config.concurrency = max(1, args.concurrency)
    if args.max_retries is not None:
        config.max_retries = max(0, args.max_retries)
    return config


def prepare_text(args: argparse.Namespace, raw_text: str, cache_dir: Path) -> str:
    if not args.dialect:
        return normalize(raw_text)

    api_key = args.api_key or os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
    translator = CachedDialectTranslator(
        GeminiDialectTranslator(api_key=api_key or "", model=args.gemini_model),
        TranslationCache(path=cache_dir / "dialect_cache.json"),
    )
    # Keep line breaks so the translator sees the original pacing.
    paced = normalize(raw_text, NormalizeOptions(preserve_newlines=True))
    logger.info("Converting %d characters to the Southern dialect.", len(paced))
    return normalize(translator.translate(paced, args.style))


def log_progress(progress: BatchProgress) -> None:
    logger.info(
        "Progress %d%% (%d/%d, failed=%s)",
        progress.progress,
        progress.attempted,
        progress.total,
        progress.failed or "none",
    )


async def run_generation(
    orchestrator: GenerationOrchestrator,
    store: ChunkStore,
    args: argparse.Namespace,
    snapshot_store: JsonFileSnapshotStore,
) -> Optional[Tuple[SynthesisRequest, BatchOutcome]]:
    if not await orchestrator.check_health():
        logger.warning("TTS engine did not answer the health check; continuing anyway.")

    if args.resume:
        snapshot = snapshot_store.load()
        if snapshot is None:
            logger.error("No resumable batch found at %s", snapshot_store.path)
            return None
        logger.info("Resuming batch for %s (%d chunks).", snapshot.file_name, len(snapshot.chunks))
        request = SynthesisRequest.from_snapshot(snapshot)
        outcome = await orchestrator.resume(store, snapshot, on_progress=log_progress)
        return request, outcome

    request = SynthesisRequest(
        voice=args.voice,
        style=args.style,
        prosody_settings=ProsodySettings(
            enabled=bool(args.rate or args.pitch or args.break_ms),
            rate=args.rate,
            pitch=args.pitch,
            break_ms=args.break_ms,
        ),
    )
    outcome = await orchestrator.run_batch(
        store,
        request,
        on_progress=log_progress,
        file_name=Path(args.input).name,
        use_dialect=args.dialect,
    )
    return request, outcome


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv or sys.argv[1:])
    configure_logging(args.debug)

    if not args.resume and not args.input:
        raise ValueError("--input is required unless --resume is given.")

    config = build_config(args)
    cache_dir = Path(args.cache_dir)
    chunk_dir = Path(args.chunk_dir)

    engine = create_engine(args)
    cache_config = CacheConfig.from_env(cache_dir / "tts")
    if cache_config.enabled and not args.no_cache:
        synthesis_cache = SynthesisCache(cache_config.directory)
        CachePruner(synthesis_cache, cache_config).run_once()
        engine = CachedTtsEngine(engine, synthesis_cache)

    store = ChunkStore()
    stats: Optional[TextStats] = None
    input_path: Optional[Path] = None
    if not args.resume:
        input_path = Path(args.input)
        if not input_path.exists():
            raise FileNotFoundError(f"Input file does not exist: {input_path}")
        raw_text = load_text(input_path)
        text = prepare_text(args, raw_text, cache_dir)
        cleaned = clean_stats(raw_text, text)
        logger.info(
            "Cleaned text: %d -> %d characters (%d%% removed).",
            cleaned.original_length,
            cleaned.cleaned_length,
            cleaned.percentage,
        )
        texts = segment(text, config.max_chunk_chars)
        if not texts:
            logger.warning("No speakable text found in input. Nothing to synthesize.")
            return 0
        store.initialize(texts, dialect_converted=args.dialect)
        stats = calculate_text_stats(raw_text, text, texts, use_dialect=args.dialect)
        logger.info(
            "Split text into %d chunks (estimated cost %.4f credits).",
            stats.chunk_count,
            stats.total_credits,
        )

    snapshot_store = JsonFileSnapshotStore(Path(args.snapshot))
    orchestrator = GenerationOrchestrator(
        engine,
        config,
        snapshot_store=snapshot_store,
        handle_factory=lambda data, mime_type: FileAudioHandle.write(chunk_dir, data, mime_type),
    )

    try:
        result = asyncio.run(run_generation(orchestrator, store, args, snapshot_store))
    except BatchFailedError as exc:
        logger.error("%s Failed chunks: %s", exc, exc.failed_ids)
        store.clear()
        return 1
    if result is None:
        return 1
    request, outcome = result

    if outcome.failed:
        logger.warning(
            "%d chunks failed (%s); run again with --resume to retry them.",
            len(outcome.failed),
            outcome.failed,
        )

    output_path = Path(args.output)
    output_format = output_path.suffix.lstrip(".").lower() or "mp3"
    assembler = AudioAssembler(PydubTranscoder(output_format=output_format))
    handles = store.ordered_handles()
    final_output: Optional[Path] = None
    final_mime: Optional[str] = None
    if handles:
        final_output, final_mime = assembler.write(handles, output_path)
    else:
        logger.warning("No chunk audio available; nothing was merged.")

    metadata_builder = MetadataBuilder(
        engine=engine,
        config=config,
        output_path=Path(args.metadata_output),
    )
    metadata = metadata_builder.build_metadata(
        store=store,
        request=request,
        outcome=outcome,
        final_output=final_output,
        final_mime_type=final_mime,
        stats=stats,
        options={"input_path": input_path, "dialect": args.dialect},
    )
    metadata_builder.write_metadata(metadata)
    logger.info("Metadata written to %s", metadata_builder.output_path)

    if not args.keep_chunks:
        store.clear()

    if final_output is not None:
        logger.info("Audiobook complete. Final audio saved to %s", final_output)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logger.error("Interrupted by user.")
        sys.exit(1)
    except Exception as exc:
        logger.exception("Fatal error: %s", exc)
        sys.exit(1)
