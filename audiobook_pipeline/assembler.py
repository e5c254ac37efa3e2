from __future__ import annotations

import asyncio
import io
import logging
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from .chunks import AudioHandle
from .errors import AssemblyError, AudioHandleReleased

logger = logging.getLogger(__name__)

__all__ = [
    "AssembledAudio",
    "Transcoder",
    "PydubTranscoder",
    "AudioAssembler",
    "decode_segment",
]


@dataclass
class AssembledAudio:
    data: bytes
    mime_type: str
    fragment_count: int
    skipped: int = 0
    sample_rate: Optional[int] = None


@dataclass
class _Fragment:
    index: int
    data: bytes
    mime_type: str


class Transcoder(ABC):
    @abstractmethod
    def encode(self, data: bytes, mime_type: str) -> Tuple[bytes, str]:
        """
        Re-encode raw PCM, WAV or a concatenated compressed stream into one
        clean file. Returns the encoded bytes and their MIME type.
        """


class PydubTranscoder(Transcoder):
    """
    Transcoder backed by pydub (and ffmpeg for compressed formats).
    """

    def __init__(
        self,
        *,
        output_format: str = "mp3",
        bitrate: str = "96k",
        codec: Optional[str] = "libmp3lame",
    ) -> None:
        self.output_format = output_format
        self.bitrate = bitrate
        self.codec = codec

    def encode(self, data: bytes, mime_type: str) -> Tuple[bytes, str]:
        segment = decode_segment(data, mime_type)
        buffer = io.BytesIO()
        if self.output_format == "wav":
            segment.export(buffer, format="wav")
        else:
            segment.export(buffer, format=self.output_format, bitrate=self.bitrate, codec=self.codec)
        output_mime = "audio/mpeg" if self.output_format == "mp3" else f"audio/{self.output_format}"
        logger.debug("Transcoded %d bytes of %s into %s.", len(data), mime_type, output_mime)
        return buffer.getvalue(), output_mime


class AudioAssembler:
    """
    Joins per-chunk fragments, in the order given, into one buffer.

    When every fragment is WAV the headers are stripped, the sample data is
    concatenated and a single header is written with the last-seen format, so
    no header bytes end up inside the audio. Raw linear PCM fragments are
    concatenated directly. Anything else is concatenated byte for byte and left
    to the transcoder to clean up.
    """

    def __init__(self, transcoder: Optional[Transcoder] = None, *, silence_gap_ms: int = 0) -> None:
        self.transcoder = transcoder or PydubTranscoder()
        self.silence_gap_ms = silence_gap_ms

    def merge(self, handles: Sequence[AudioHandle]) -> AssembledAudio:
        if not handles:
            raise ValueError("No audio handles provided for merging.")

        fragments: List[_Fragment] = []
        for index, handle in enumerate(handles, start=1):
            try:
                data = handle.read()
            except (AudioHandleReleased, OSError) as exc:
                logger.warning("Skipping audio fragment %d: %s", index, exc)
                continue
            if not data:
                logger.warning("Skipping audio fragment %d: it is empty.", index)
                continue
            fragments.append(_Fragment(index=index, data=data, mime_type=handle.mime_type))

        skipped = len(handles) - len(fragments)
        if not fragments:
            raise AssemblyError(f"None of the {len(handles)} audio fragments could be read.")

        if all(_is_wav(f) for f in fragments):
            merged = self._merge_wav(fragments, skipped)
        elif all(_is_linear_pcm(f.mime_type) for f in fragments):
            merged = AssembledAudio(
                data=b"".join(f.data for f in fragments),
                mime_type=fragments[-1].mime_type,
                fragment_count=len(fragments),
                skipped=skipped,
                sample_rate=_parse_linear_pcm_mime(fragments[-1].mime_type)["rate"],
            )
        else:
            logger.info("Fragments are compressed or mixed; concatenating %d byte streams.", len(fragments))
            merged = AssembledAudio(
                data=b"".join(f.data for f in fragments),
                mime_type=fragments[0].mime_type,
                fragment_count=len(fragments),
                skipped=skipped,
            )

        logger.info(
            "Merged %d audio fragments (%d skipped) into %d bytes of %s",
            merged.fragment_count,
            merged.skipped,
            len(merged.data),
            merged.mime_type,
        )
        return merged

    async def assemble(self, handles: Sequence[AudioHandle]) -> Tuple[bytes, str]:
        merged = await asyncio.to_thread(self.merge, handles)
        return await asyncio.to_thread(self.transcoder.encode, merged.data, merged.mime_type)

    def write(self, handles: Sequence[AudioHandle], output_path: Path) -> Tuple[Path, str]:
        """Merge, transcode and write the result to ``output_path``."""
        merged = self.merge(handles)
        data, mime_type = self.transcoder.encode(merged.data, merged.mime_type)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(data)
        logger.info("Wrote %s (%d bytes).", output_path, len(data))
        return output_path, mime_type

    def _merge_wav(self, fragments: List[_Fragment], skipped: int) -> AssembledAudio:
        segments: List[AudioSegment] = []
        for fragment in fragments:
            try:
                segments.append(AudioSegment.from_file(io.BytesIO(fragment.data), format="wav"))
            except (CouldntDecodeError, EOFError, ValueError) as exc:
                logger.warning("Skipping audio fragment %d: unreadable WAV (%s).", fragment.index, exc)
                skipped += 1

        if not segments:
            raise AssemblyError("None of the WAV fragments could be decoded.")

        # Raw bodies only concatenate under one channel layout and sample width.
        last = segments[-1]
        pcm = bytearray()
        for position, segment in enumerate(segments):
            if segment.channels != last.channels:
                segment = segment.set_channels(last.channels)
            if segment.sample_width != last.sample_width:
                segment = segment.set_sample_width(last.sample_width)
            if position and self.silence_gap_ms > 0:
                pcm.extend(_silence_bytes(last, self.silence_gap_ms))
            pcm.extend(segment.raw_data)

        combined = AudioSegment(
            data=bytes(pcm),
            sample_width=last.sample_width,
            frame_rate=last.frame_rate,
            channels=last.channels,
        )
        buffer = io.BytesIO()
        combined.export(buffer, format="wav")
        return AssembledAudio(
            data=buffer.getvalue(),
            mime_type="audio/wav",
            fragment_count=len(segments),
            skipped=skipped,
            sample_rate=last.frame_rate,
        )


def decode_segment(data: bytes, mime_type: str, *, default_rate: int = 24000) -> AudioSegment:
    mime_type = mime_type or "audio/wav"
    if _is_linear_pcm(mime_type):
        params = _parse_linear_pcm_mime(mime_type, default_rate=default_rate)
        return AudioSegment(
            data=data,
            sample_width=params["sample_width"],
            frame_rate=params["rate"],
            channels=params["channels"],
        )

    if data[:4] == b"RIFF" or "wav" in mime_type.lower():
        return AudioSegment.from_file(io.BytesIO(data), format="wav")

    guessed = (mimetypes.guess_extension(mime_type.split(";")[0].strip()) or "").lstrip(".")
    fmt = guessed or mime_type.split("/")[-1].split(";")[0]
    if fmt in ("mp2", "mpga"):
        fmt = "mp3"
    return AudioSegment.from_file(io.BytesIO(data), format=fmt)


def _is_wav(fragment: _Fragment) -> bool:
    return fragment.data[:4] == b"RIFF" and fragment.data[8:12] == b"WAVE"


def _is_linear_pcm(mime_type: str) -> bool:
    return (mime_type or "").lower().startswith("audio/l")


def _silence_bytes(segment: AudioSegment, duration_ms: int) -> bytes:
    frames = int(segment.frame_rate * duration_ms / 1000)
    return b"\x00" * (frames * segment.frame_width)


def _parse_linear_pcm_mime(mime_type: str, *, default_rate: int = 24000) -> Dict[str, int]:
    params: Dict[str, int] = {"rate": default_rate, "sample_width": 2, "channels": 1}
    fragments = [fragment.strip() for fragment in mime_type.split(";")]
    for fragment in fragments:
        if fragment.lower().startswith("rate="):
            try:
                params["rate"] = int(fragment.split("=", 1)[1])
            except ValueError:
                logger.warning("Unable to parse rate from mime type %s", mime_type)
        elif fragment.lower().startswith("channels="):
            try:
                params["channels"] = int(fragment.split("=", 1)[1])
            except ValueError:
                logger.warning("Unable to parse channels from mime type %s", mime_type)
        elif fragment.lower().startswith("audio/l"):
            try:
                bits = int(fragment[len("audio/l"):])
                params["sample_width"] = max(1, bits // 8)
            except ValueError:
                logger.warning("Unable to parse bits from mime type %s", mime_type)
    return params
