from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from .errors import AudioHandleReleased
from .segmenter import PARAGRAPH_SEPARATOR

logger = logging.getLogger(__name__)

__all__ = [
    "AudioHandle",
    "FileAudioHandle",
    "Fingerprint",
    "Chunk",
    "ChunkStore",
]


class AudioHandle:
    """
    Exclusive owner of one synthesized audio fragment.

    Once released the handle refuses reads; releasing twice is harmless.
    """

    def __init__(self, data: bytes, mime_type: str) -> None:
        self._data: Optional[bytes] = data
        self.mime_type = mime_type
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def read(self) -> bytes:
        if self._released or self._data is None:
            raise AudioHandleReleased("Audio handle was already released.")
        return self._data

    def release(self) -> None:
        self._data = None
        self._released = True

    def __repr__(self) -> str:
        state = "released" if self._released else f"{len(self._data or b'')} bytes"
        return f"{self.__class__.__name__}({self.mime_type}, {state})"


class FileAudioHandle(AudioHandle):
    """Handle whose bytes live in a file that is deleted on release."""

    def __init__(self, path: Path, mime_type: str) -> None:
        super().__init__(b"", mime_type)
        self.path = path

    @classmethod
    def write(cls, directory: Path, data: bytes, mime_type: str, *, prefix: str = "chunk_") -> "FileAudioHandle":
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{prefix}{uuid.uuid4().hex}{_extension_for(mime_type)}"
        path.write_bytes(data)
        return cls(path, mime_type)

    def read(self) -> bytes:
        if self._released:
            raise AudioHandleReleased(f"Audio handle for {self.path} was already released.")
        return self.path.read_bytes()

    def release(self) -> None:
        if not self._released:
            try:
                self.path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Failed to delete audio file %s: %s", self.path, exc)
        super().release()

    def __repr__(self) -> str:
        return f"FileAudioHandle({self.path}, {self.mime_type}, released={self._released})"


@dataclass(frozen=True)
class Fingerprint:
    """Voice, style and prosody-override signature that produced a chunk's audio."""

    voice: str
    style: str
    prosody_key: str = "{}"

    @classmethod
    def of(cls, voice: str, style: str, prosody_override: Optional[Dict[str, object]] = None) -> "Fingerprint":
        key = json.dumps(prosody_override or {}, sort_keys=True, ensure_ascii=False)
        return cls(voice=voice, style=style, prosody_key=key)


@dataclass(eq=False)
class Chunk:
    id: int
    text: str
    audio_handle: Optional[AudioHandle] = None
    audio_generated: bool = False
    fingerprint: Optional[Fingerprint] = None
    generated_prosody: Optional[Dict[str, object]] = None
    preview_handle: Optional[AudioHandle] = None
    preview_fingerprint: Optional[Fingerprint] = None
    dialect_converted: bool = False
    processing: bool = False
    previewing: bool = False

    @property
    def has_audio(self) -> bool:
        return (
            self.audio_generated
            and self.audio_handle is not None
            and not self.audio_handle.released
        )

    def __repr__(self) -> str:
        preview = self.text[:40].replace("\n", " ")
        return f"Chunk(id={self.id}, text={preview!r}, audio={self.has_audio})"


class ChunkStore:
    """
    Ordered, exclusively owned collection of chunks.

    Ids are re-labelled ``1..N`` in sequence order after every structural change,
    so an id is only meaningful until the next split, merge or delete. Code that
    must follow a chunk across awaits keeps the ``Chunk`` object itself and the
    store checks identity before installing audio on it.
    """

    def __init__(self) -> None:
        self._chunks: List[Chunk] = []

    def __len__(self) -> int:
        return len(self._chunks)

    def __iter__(self) -> Iterator[Chunk]:
        return iter(list(self._chunks))

    @property
    def chunks(self) -> List[Chunk]:
        return list(self._chunks)

    def get(self, chunk_id: int) -> Optional[Chunk]:
        if 1 <= chunk_id <= len(self._chunks):
            chunk = self._chunks[chunk_id - 1]
            if chunk.id == chunk_id:
                return chunk
        return next((c for c in self._chunks if c.id == chunk_id), None)

    def contains(self, chunk: Chunk) -> bool:
        return any(c is chunk for c in self._chunks)

    def texts(self) -> List[str]:
        return [c.text for c in self._chunks]

    def full_text(self) -> str:
        return PARAGRAPH_SEPARATOR.join(self.texts())

    def ordered_handles(self) -> List[AudioHandle]:
        return [c.audio_handle for c in self._chunks if c.has_audio and c.audio_handle is not None]

    def initialize(
        self,
        texts: Sequence[str],
        *,
        fingerprint: Optional[Fingerprint] = None,
        dialect_converted: bool = False,
        dialect_flags: Optional[Sequence[bool]] = None,
    ) -> List[Chunk]:
        """
        Replace the sequence with ``texts``.

        An old chunk whose text is identical, whose audio is still valid and whose
        fingerprint equals ``fingerprint`` is carried forward (audio and preview
        included) under its new id. Each old chunk is reused at most once; every
        handle of an old chunk that is not carried forward is released.
        """
        available = list(self._chunks)
        fresh: List[Chunk] = []
        reused_count = 0

        for idx, text in enumerate(texts, start=1):
            flag = dialect_flags[idx - 1] if dialect_flags is not None else dialect_converted
            reused = None
            if fingerprint is not None:
                reused = next(
                    (
                        old
                        for old in available
                        if old.text == text and old.has_audio and old.fingerprint == fingerprint
                    ),
                    None,
                )
            if reused is not None:
                available = [old for old in available if old is not reused]
                reused.id = idx
                reused.processing = False
                reused.previewing = False
                fresh.append(reused)
                reused_count += 1
            else:
                fresh.append(Chunk(id=idx, text=text, dialect_converted=bool(flag)))

        for discarded in available:
            _release_all(discarded)

        self._chunks = fresh
        logger.debug(
            "Initialized %d chunks (%d reused, %d discarded).",
            len(fresh),
            reused_count,
            len(available),
        )
        return self.chunks

    def update_text(self, chunk_id: int, new_text: str) -> bool:
        """Set a chunk's text. Returns True only when the text actually changed."""
        chunk = self.get(chunk_id)
        if chunk is None or chunk.text == new_text:
            return False
        chunk.text = new_text
        _invalidate(chunk)
        chunk.dialect_converted = False
        return True

    def split(self, chunk_id: int, offset: int) -> bool:
        chunk = self.get(chunk_id)
        if chunk is None:
            return False
        offset = max(0, offset)
        before = chunk.text[:offset].strip()
        after = chunk.text[offset:].strip()
        if not before or not after:
            logger.debug("Ignoring split of chunk %d at %d: empty side.", chunk_id, offset)
            return False

        index = self._chunks.index(chunk)
        chunk.text = before
        _invalidate(chunk)
        tail = Chunk(id=0, text=after, dialect_converted=chunk.dialect_converted)
        self._chunks.insert(index + 1, tail)
        self._redense()
        return True

    def merge_with_next(self, chunk_id: int) -> bool:
        chunk = self.get(chunk_id)
        if chunk is None:
            return False
        index = self._chunks.index(chunk)
        if index == len(self._chunks) - 1:
            return False

        following = self._chunks[index + 1]
        chunk.text = f"{chunk.text}{PARAGRAPH_SEPARATOR}{following.text}".strip()
        _invalidate(chunk)
        chunk.dialect_converted = chunk.dialect_converted and following.dialect_converted
        _release_all(following)
        del self._chunks[index + 1]
        self._redense()
        return True

    def delete(self, chunk_id: int) -> bool:
        chunk = self.get(chunk_id)
        if chunk is None:
            return False
        _release_all(chunk)
        self._chunks = [c for c in self._chunks if c is not chunk]
        self._redense()
        return True

    def all_generated(self) -> bool:
        return bool(self._chunks) and all(
            c.audio_generated and c.audio_handle is not None for c in self._chunks
        )

    def set_processing(self, chunk: Chunk, value: bool) -> None:
        if self.contains(chunk):
            chunk.processing = value

    def set_previewing(self, chunk: Chunk, value: bool) -> None:
        if self.contains(chunk):
            chunk.previewing = value

    def attach_audio(
        self,
        chunk: Chunk,
        handle: AudioHandle,
        fingerprint: Fingerprint,
        *,
        source_text: str,
        prosody: Optional[Dict[str, object]] = None,
    ) -> bool:
        """
        Install freshly synthesized audio on ``chunk``.

        The handle is released instead when the chunk has left the store or its
        text changed while synthesis was in flight.
        """
        if not self.contains(chunk) or chunk.text != source_text:
            logger.info("Discarding stale audio for chunk %d; its text changed.", chunk.id)
            handle.release()
            return False
        if chunk.audio_handle is not None and chunk.audio_handle is not handle:
            chunk.audio_handle.release()
        chunk.audio_handle = handle
        chunk.audio_generated = True
        chunk.fingerprint = fingerprint
        chunk.generated_prosody = prosody
        chunk.processing = False
        return True

    def attach_preview(
        self,
        chunk: Chunk,
        handle: AudioHandle,
        fingerprint: Fingerprint,
        *,
        source_text: str,
    ) -> bool:
        if not self.contains(chunk) or chunk.text != source_text:
            handle.release()
            return False
        if chunk.preview_handle is not None and chunk.preview_handle is not handle:
            chunk.preview_handle.release()
        chunk.preview_handle = handle
        chunk.preview_fingerprint = fingerprint
        chunk.previewing = False
        return True

    def clear_previews(self) -> None:
        for chunk in self._chunks:
            _release_preview(chunk)

    def clear(self) -> None:
        for chunk in self._chunks:
            _release_all(chunk)
        self._chunks = []

    def _redense(self) -> None:
        for position, chunk in enumerate(self._chunks, start=1):
            chunk.id = position


def _invalidate(chunk: Chunk) -> None:
    _release_all(chunk)
    chunk.audio_generated = False
    chunk.fingerprint = None
    chunk.generated_prosody = None
    chunk.processing = False
    chunk.previewing = False


def _release_all(chunk: Chunk) -> None:
    if chunk.audio_handle is not None:
        chunk.audio_handle.release()
        chunk.audio_handle = None
    chunk.audio_generated = False
    _release_preview(chunk)


def _release_preview(chunk: Chunk) -> None:
    if chunk.preview_handle is not None:
        chunk.preview_handle.release()
        chunk.preview_handle = None
    chunk.preview_fingerprint = None
    chunk.previewing = False


def _extension_for(mime_type: str) -> str:
    lowered = (mime_type or "").lower()
    if "wav" in lowered:
        return ".wav"
    if "mpeg" in lowered or "mp3" in lowered:
        return ".mp3"
    if "ogg" in lowered:
        return ".ogg"
    return ".pcm" if lowered.startswith("audio/l") or "pcm" in lowered else ".bin"
