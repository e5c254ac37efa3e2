"""
Voices, reading-style presets and prosody handling.

A reading style fixes speaking rate, pitch and the pause inserted between
paragraphs; a user may override any of the three. The effective values are
rendered into SSML for the synthesis engine.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional
from xml.sax.saxutils import escape

from .errors import TtsValidationError

logger = logging.getLogger(__name__)

__all__ = [
    "VoiceInfo",
    "ReadingStyle",
    "Prosody",
    "VOICES",
    "READING_STYLES",
    "DEFAULT_VOICE",
    "DEFAULT_STYLE",
    "resolve_voice",
    "voice_info",
    "reading_style",
    "resolve_prosody",
    "parse_prosody_override",
    "validate_prosody_fields",
    "validate_prosody",
    "build_ssml",
]

MIN_RATE, MAX_RATE = 0.5, 2.0
MIN_PITCH_ST, MAX_PITCH_ST = -20.0, 20.0
MIN_BREAK_MS, MAX_BREAK_MS = 100, 2000

PITCH_PATTERN = re.compile(r"^([+-]?\d+(?:\.\d+)?)st$", re.IGNORECASE)
BREAK_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)ms$", re.IGNORECASE)


@dataclass(frozen=True)
class VoiceInfo:
    key: str
    technical_name: str
    display_name: str
    gender: str
    language_code: str = "vi-VN"


@dataclass(frozen=True)
class ReadingStyle:
    key: str
    name: str
    description: str
    rate: float
    break_time: str
    pitch_male: str
    pitch_female: str
    pitch_default: str


@dataclass(frozen=True)
class Prosody:
    rate: float
    pitch: Optional[str]
    break_time: str

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


VOICES: Dict[str, VoiceInfo] = {
    "DUONG_QUA": VoiceInfo("DUONG_QUA", "vi-VN-Standard-B", "Dương Quá", "male"),
    "TIEU_LONG_NU": VoiceInfo("TIEU_LONG_NU", "vi-VN-Standard-A", "Tiểu Long Nữ", "female"),
    "HOANG_DUNG": VoiceInfo("HOANG_DUNG", "vi-VN-Standard-C", "Hoàng Dung", "female"),
    "QUACH_TINH": VoiceInfo("QUACH_TINH", "vi-VN-Standard-D", "Quách Tĩnh", "male"),
}

READING_STYLES: Dict[str, ReadingStyle] = {
    "literature": ReadingStyle(
        key="literature",
        name="Văn học / Truyện",
        description="Warm, unhurried storytelling.",
        rate=0.88,
        break_time="700ms",
        pitch_male="-2st",
        pitch_female="-1st",
        pitch_default="-1st",
    ),
    "formal": ReadingStyle(
        key="formal",
        name="Phi hư cấu (Sách học)",
        description="Clear and measured, slow enough to absorb facts.",
        rate=0.95,
        break_time="450ms",
        pitch_male="-1st",
        pitch_female="-0.5st",
        pitch_default="-0.5st",
    ),
    "general": ReadingStyle(
        key="general",
        name="Thông thường",
        description="Everyday conversational delivery.",
        rate=1.0,
        break_time="300ms",
        pitch_male="0st",
        pitch_female="0st",
        pitch_default="0st",
    ),
    "news": ReadingStyle(
        key="news",
        name="Tin tức / Báo chí",
        description="Brisk, objective newsreader.",
        rate=1.08,
        break_time="220ms",
        pitch_male="+0.5st",
        pitch_female="0st",
        pitch_default="0st",
    ),
}

DEFAULT_VOICE = "DUONG_QUA"
DEFAULT_STYLE = "general"


def resolve_voice(voice: Optional[str]) -> str:
    """
    Map a voice key (``DUONG_QUA``) or a technical name (``vi-VN-Standard-B``)
    to the technical name the provider expects. Unknown voices fall back to the
    default voice.
    """
    if voice and voice in VOICES:
        return VOICES[voice].technical_name
    technical_names = {info.technical_name for info in VOICES.values()}
    if voice and voice in technical_names:
        return voice
    if voice:
        logger.warning("Unknown voice %s; using %s.", voice, DEFAULT_VOICE)
    return VOICES[DEFAULT_VOICE].technical_name


def voice_info(voice: str) -> Optional[VoiceInfo]:
    if voice in VOICES:
        return VOICES[voice]
    return next((info for info in VOICES.values() if info.technical_name == voice), None)


def reading_style(style: Optional[str]) -> ReadingStyle:
    if style and style in READING_STYLES:
        return READING_STYLES[style]
    by_name = {s.name: s for s in READING_STYLES.values()}
    if style and style in by_name:
        return by_name[style]
    return READING_STYLES[DEFAULT_STYLE]


def resolve_prosody(
    style: Optional[str],
    voice: str,
    override: Optional[Dict[str, object]] = None,
) -> Prosody:
    """
    Effective prosody for ``voice`` reading in ``style``.

    Pitch follows the voice gender. Any value present in ``override`` (keys
    ``rate``, ``pitch``, ``breakTime``) replaces the preset value.
    """
    preset = reading_style(style)
    info = voice_info(voice)
    if info is not None and info.gender == "male":
        pitch = preset.pitch_male
    elif info is not None and info.gender == "female":
        pitch = preset.pitch_female
    else:
        pitch = preset.pitch_default

    prosody = Prosody(rate=preset.rate, pitch=pitch, break_time=preset.break_time)
    if not override:
        return prosody

    rate = override.get("rate")
    return Prosody(
        rate=float(rate) if isinstance(rate, (int, float)) else prosody.rate,
        pitch=str(override.get("pitch") or prosody.pitch),
        break_time=str(override.get("breakTime") or prosody.break_time),
    )


def validate_prosody_fields(rate: str = "", pitch: str = "", break_ms: str = "") -> Dict[str, str]:
    """
    Validate user-entered override fields (all strings, blanks mean "unset").

    Returns a mapping of field name to error message; empty when valid.
    """
    errors: Dict[str, str] = {}
    if rate.strip():
        value = _to_float(rate)
        if value is None:
            errors["rate"] = "Rate must be a number."
        elif not MIN_RATE <= value <= MAX_RATE:
            errors["rate"] = f"Rate must be between {MIN_RATE:.2f} and {MAX_RATE:.2f}."
    if pitch.strip():
        match = PITCH_PATTERN.match(pitch.strip())
        if not match:
            errors["pitch"] = "Pitch must look like -1st, 0st or +0.5st."
        elif not MIN_PITCH_ST <= float(match.group(1)) <= MAX_PITCH_ST:
            errors["pitch"] = "Pitch must be between -20st and +20st."
    if break_ms.strip():
        value = _to_float(break_ms)
        if value is None:
            errors["breakMs"] = "Break must be a number of milliseconds."
        elif not MIN_BREAK_MS <= value <= MAX_BREAK_MS:
            errors["breakMs"] = f"Break must be between {MIN_BREAK_MS} and {MAX_BREAK_MS}ms."
    return errors


def parse_prosody_override(
    enabled: bool,
    rate: str = "",
    pitch: str = "",
    break_ms: str = "",
) -> Optional[Dict[str, object]]:
    """
    Turn the string override fields into the override mapping used for synthesis
    and fingerprints. Returns None when overrides are disabled or all blank.

    Raises TtsValidationError when a field is present but invalid.
    """
    if not enabled:
        return None
    errors = validate_prosody_fields(rate, pitch, break_ms)
    if errors:
        raise TtsValidationError("Invalid prosody override: " + "; ".join(errors.values()))

    payload: Dict[str, object] = {}
    parsed_rate = _to_float(rate)
    if parsed_rate is not None:
        payload["rate"] = parsed_rate
    if pitch.strip():
        payload["pitch"] = pitch.strip()
    if break_ms.strip():
        payload["breakTime"] = f"{break_ms.strip()}ms"
    return payload or None


def validate_prosody(prosody: Prosody) -> None:
    """Reject prosody the provider would refuse, before any network call."""
    problems: List[str] = []
    if not MIN_RATE <= prosody.rate <= MAX_RATE:
        problems.append(f"rate {prosody.rate}")
    if prosody.pitch:
        match = PITCH_PATTERN.match(prosody.pitch)
        if not match or not MIN_PITCH_ST <= float(match.group(1)) <= MAX_PITCH_ST:
            problems.append(f"pitch {prosody.pitch}")
    match = BREAK_PATTERN.match(prosody.break_time or "")
    if not match or not MIN_BREAK_MS <= float(match.group(1)) <= MAX_BREAK_MS:
        problems.append(f"break {prosody.break_time}")
    if problems:
        raise TtsValidationError("Invalid prosody values: " + ", ".join(problems))


def build_ssml(
    text: str,
    prosody: Prosody,
    *,
    rate_as_percent: bool = False,
    include_pitch: bool = True,
) -> str:
    """
    Render ``text`` as SSML: paragraphs joined by a ``<break>`` of the prosody
    pause, the whole body wrapped in a single ``<prosody>`` element.

    Providers differ in the prosody attributes they accept: ``rate_as_percent``
    writes ``rate="88%"`` instead of ``rate="0.88"`` and ``include_pitch=False``
    omits the pitch attribute.
    """
    normalized = text.replace("\r\n", "\n")
    paragraphs = [
        part.replace("\n", " ").strip() for part in re.split(r"\n{2,}", normalized)
    ]
    paragraphs = [p for p in paragraphs if p]

    paragraph_break = f'<break time="{prosody.break_time or "500ms"}"/>'
    body = paragraph_break.join(
        escape(p, {'"': "&quot;", "'": "&apos;"}) for p in paragraphs
    )
    rate = f"{round(prosody.rate * 100)}%" if rate_as_percent else f"{prosody.rate}"
    pitch_attr = f' pitch="{prosody.pitch}"' if prosody.pitch and include_pitch else ""
    return f'<speak><prosody rate="{rate}"{pitch_attr}>{body}</prosody></speak>'


def _to_float(value: str) -> Optional[float]:
    try:
        return float(value.strip())
    except (AttributeError, ValueError):
        return None
