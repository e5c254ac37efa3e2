"""
Text-to-audiobook pipeline.

This package exposes the building blocks used by the CLI entry point:

- Text cleanup (`normalizer`) and chunk segmentation (`segmenter`).
- The chunk store with audio handle ownership (`chunks`).
- Engine abstractions and concrete implementations (`tts_engine`) plus voices,
  reading styles and SSML (`styles`).
- Concurrent batch generation with retry and resumable snapshots
  (`orchestrator`, `snapshot`) and an on-disk synthesis cache (`cache`).
- Audio merging and transcoding (`assembler`).
- Find/replace over source text and chunks (`find_replace`).
- Dialect translation (`translation`), text statistics (`stats`), source loading
  (`loaders`) and metadata helpers (`metadata`).
"""

from .normalizer import NormalizeOptions, clean_stats, normalize
from .segmenter import extract_preview_text, hard_split_by_length, segment, split_for_translation
from .chunks import AudioHandle, Chunk, ChunkStore, FileAudioHandle, Fingerprint
from .errors import (
    AssemblyError,
    AudiobookError,
    AudioHandleReleased,
    BatchFailedError,
    TranslationError,
    TtsError,
    TtsTransientError,
    TtsValidationError,
)
from .styles import Prosody, build_ssml, resolve_prosody, resolve_voice
from .tts_engine import (
    GoogleCloudTtsEngine,
    MockTtsEngine,
    PollyTtsEngine,
    SynthesisResult,
    TtsEngine,
)
from .cache import CacheConfig, CachedTtsEngine, CachePruner, SynthesisCache
from .snapshot import BatchSnapshot, InMemorySnapshotStore, JsonFileSnapshotStore
from .orchestrator import (
    BatchOutcome,
    GenerationConfig,
    GenerationOrchestrator,
    ProsodySettings,
    SynthesisRequest,
)
from .assembler import AssembledAudio, AudioAssembler, PydubTranscoder
from .find_replace import (
    FindItem,
    FindMatch,
    FindReplaceSession,
    FindScope,
    find_next,
    replace_all_literal,
    replace_at_range,
    text_matches_at,
)
from .translation import CachedDialectTranslator, GeminiDialectTranslator, TranslationCache
from .stats import calculate_text_stats
from .loaders import load_text
from .metadata import MetadataBuilder

__all__ = [
    "normalize",
    "NormalizeOptions",
    "clean_stats",
    "segment",
    "split_for_translation",
    "hard_split_by_length",
    "extract_preview_text",
    "AudioHandle",
    "FileAudioHandle",
    "Fingerprint",
    "Chunk",
    "ChunkStore",
    "AudiobookError",
    "TtsError",
    "TtsValidationError",
    "TtsTransientError",
    "AudioHandleReleased",
    "AssemblyError",
    "BatchFailedError",
    "TranslationError",
    "Prosody",
    "build_ssml",
    "resolve_prosody",
    "resolve_voice",
    "SynthesisResult",
    "TtsEngine",
    "GoogleCloudTtsEngine",
    "PollyTtsEngine",
    "MockTtsEngine",
    "CacheConfig",
    "SynthesisCache",
    "CachedTtsEngine",
    "CachePruner",
    "BatchSnapshot",
    "JsonFileSnapshotStore",
    "InMemorySnapshotStore",
    "GenerationConfig",
    "ProsodySettings",
    "SynthesisRequest",
    "BatchOutcome",
    "GenerationOrchestrator",
    "AssembledAudio",
    "AudioAssembler",
    "PydubTranscoder",
    "FindItem",
    "FindMatch",
    "FindScope",
    "FindReplaceSession",
    "find_next",
    "text_matches_at",
    "replace_at_range",
    "replace_all_literal",
    "GeminiDialectTranslator",
    "TranslationCache",
    "CachedDialectTranslator",
    "calculate_text_stats",
    "load_text",
    "MetadataBuilder",
]
