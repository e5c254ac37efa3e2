from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

__all__ = [
    "SNAPSHOT_VERSION",
    "SnapshotChunk",
    "BatchSnapshot",
    "SnapshotStore",
    "JsonFileSnapshotStore",
    "InMemorySnapshotStore",
]

SNAPSHOT_VERSION = 1


@dataclass
class SnapshotChunk:
    id: int
    text: str
    dialect_converted: bool = False


@dataclass
class BatchSnapshot:
    """
    Resumable record of a batch run. Prosody override fields stay strings, as
    entered, until the run parses them.
    """

    chunks: List[SnapshotChunk]
    voice: str
    style: str
    file_name: Optional[str] = None
    use_dialect: bool = False
    advanced_prosody_enabled: bool = False
    custom_rate: str = ""
    custom_pitch: str = ""
    custom_break_ms: str = ""
    completed_chunk_ids: List[int] = field(default_factory=list)
    failed_chunk_ids: List[int] = field(default_factory=list)
    is_running: bool = True
    progress: int = 0
    saved_at: int = 0
    version: int = SNAPSHOT_VERSION

    def with_progress(
        self,
        *,
        completed: List[int],
        failed: List[int],
        progress: int,
        is_running: bool,
    ) -> "BatchSnapshot":
        return replace(
            self,
            completed_chunk_ids=sorted(completed),
            failed_chunk_ids=sorted(failed),
            progress=progress,
            is_running=is_running,
            saved_at=_now_ms(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "savedAt": self.saved_at,
            "fileName": self.file_name,
            "useSouthernDialect": self.use_dialect,
            "selectedVoice": self.voice,
            "selectedGenre": self.style,
            "advancedProsodyEnabled": self.advanced_prosody_enabled,
            "customRate": self.custom_rate,
            "customPitch": self.custom_pitch,
            "customBreakMs": self.custom_break_ms,
            "chunks": [
                {"id": c.id, "text": c.text, "isDialectConverted": c.dialect_converted}
                for c in self.chunks
            ],
            "completedChunkIds": list(self.completed_chunk_ids),
            "failedChunkIds": list(self.failed_chunk_ids),
            "isRunning": self.is_running,
            "batchProgress": self.progress,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> Optional["BatchSnapshot"]:
        """Parse a persisted payload; anything unrecognisable yields None."""
        if not isinstance(payload, dict) or payload.get("version") != SNAPSHOT_VERSION:
            return None
        raw_chunks = payload.get("chunks")
        if not isinstance(raw_chunks, list):
            return None
        try:
            chunks = [
                SnapshotChunk(
                    id=int(item["id"]),
                    text=str(item["text"]),
                    dialect_converted=bool(item.get("isDialectConverted", False)),
                )
                for item in raw_chunks
            ]
            return cls(
                chunks=chunks,
                voice=str(payload.get("selectedVoice") or ""),
                style=str(payload.get("selectedGenre") or ""),
                file_name=payload.get("fileName"),
                use_dialect=bool(payload.get("useSouthernDialect", False)),
                advanced_prosody_enabled=bool(payload.get("advancedProsodyEnabled", False)),
                custom_rate=str(payload.get("customRate") or ""),
                custom_pitch=str(payload.get("customPitch") or ""),
                custom_break_ms=str(payload.get("customBreakMs") or ""),
                completed_chunk_ids=[int(i) for i in payload.get("completedChunkIds") or []],
                failed_chunk_ids=[int(i) for i in payload.get("failedChunkIds") or []],
                is_running=bool(payload.get("isRunning", False)),
                progress=int(payload.get("batchProgress") or 0),
                saved_at=int(payload.get("savedAt") or 0),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Discarding malformed batch snapshot: %s", exc)
            return None


class SnapshotStore(ABC):
    @abstractmethod
    def load(self) -> Optional[BatchSnapshot]:
        """Return the saved snapshot, or None when there is none usable."""

    @abstractmethod
    def save(self, snapshot: BatchSnapshot) -> None:
        """Persist ``snapshot``; may raise OSError."""

    @abstractmethod
    def clear(self) -> None:
        """Forget the saved snapshot."""


class JsonFileSnapshotStore(SnapshotStore):
    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> Optional[BatchSnapshot]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Unable to read batch snapshot %s: %s", self.path, exc)
            return None
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("Batch snapshot %s is not valid JSON; ignoring it.", self.path)
            return None
        return BatchSnapshot.from_dict(payload)

    def save(self, snapshot: BatchSnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Unable to delete batch snapshot %s: %s", self.path, exc)


class InMemorySnapshotStore(SnapshotStore):
    """Keeps the serialized form so a round trip behaves like the file store."""

    def __init__(self) -> None:
        self._payload: Optional[Dict[str, Any]] = None
        self.saves = 0

    def load(self) -> Optional[BatchSnapshot]:
        if self._payload is None:
            return None
        return BatchSnapshot.from_dict(json.loads(json.dumps(self._payload)))

    def save(self, snapshot: BatchSnapshot) -> None:
        self._payload = snapshot.to_dict()
        self.saves += 1

    def clear(self) -> None:
        self._payload = None


def _now_ms() -> int:
    return int(time.time() * 1000)
