from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from .chunks import ChunkStore
from .orchestrator import BatchOutcome, GenerationConfig, SynthesisRequest
from .stats import TextStats
from .tts_engine import TtsEngine

__all__ = ["MetadataBuilder"]


@dataclass
class MetadataBuilder:
    engine: TtsEngine
    config: GenerationConfig
    output_path: Path

    def build_metadata(
        self,
        *,
        store: ChunkStore,
        request: SynthesisRequest,
        outcome: BatchOutcome,
        final_output: Optional[Path],
        final_mime_type: Optional[str],
        stats: Optional[TextStats] = None,
        options: Optional[Dict[str, object]] = None,
    ) -> Dict[str, object]:
        options = options or {}
        final_bytes = final_output.stat().st_size if final_output and final_output.exists() else None

        metadata = {
            "created_at": datetime.now(timezone.utc).isoformat(),
            "engine": self.engine.descriptor(),
            "voice": request.voice_id,
            "style": request.style,
            "prosody": request.prosody().to_dict(),
            "prosody_override": request.prosody_override,
            "input_path": str(options.get("input_path")) if options.get("input_path") else None,
            "dialect": bool(options.get("dialect", False)),
            "chunks": [
                {
                    "id": chunk.id,
                    "chars": len(chunk.text),
                    "dialect_converted": chunk.dialect_converted,
                    "generated": chunk.has_audio,
                    "prosody": chunk.generated_prosody,
                }
                for chunk in store
            ],
            "batch": {
                "selected": outcome.selected,
                "completed": outcome.completed,
                "failed": outcome.failed,
                "progress": outcome.progress,
                "stopped": outcome.stopped,
                "errors": {str(k): v for k, v in outcome.errors.items()},
            },
            "final_output": str(final_output) if final_output else None,
            "final_mime_type": final_mime_type,
            "final_bytes": final_bytes,
            "stats": asdict(stats) if stats else None,
            "config": {
                "concurrency": self.config.concurrency,
                "max_retries": self.config.max_retries,
                "max_chunk_chars": self.config.max_chunk_chars,
                "max_input_bytes": self.config.max_input_bytes,
            },
        }

        return metadata

    def write_metadata(self, metadata: Dict[str, object]) -> None:
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        with self.output_path.open("w", encoding="utf-8") as f:
            json.dump(metadata, f, ensure_ascii=False, indent=2)
