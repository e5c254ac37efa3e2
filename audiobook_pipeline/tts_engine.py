from __future__ import annotations

import io
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from pydub import AudioSegment

from .errors import TtsError, TtsTransientError, TtsValidationError
from .styles import VOICES, Prosody, build_ssml

logger = logging.getLogger(__name__)

__all__ = [
    "SynthesisResult",
    "TtsEngine",
    "GoogleCloudTtsEngine",
    "PollyTtsEngine",
    "MockTtsEngine",
    "classify_error",
]

RETRYABLE_CODES = {8, 14, 429, 503}
RETRYABLE_MESSAGE_PATTERN = re.compile(
    r"resource_exhausted|quota|rate limit|too many requests|unavailable|"
    r"timed out|timeout|econnreset|socket hang up|connection reset",
    re.IGNORECASE,
)
RATE_LIMIT_MESSAGE_PATTERN = re.compile(
    r"resource_exhausted|quota|rate limit|too many requests|throttl", re.IGNORECASE
)


@dataclass
class SynthesisResult:
    audio: bytes
    mime_type: str
    prosody: Optional[Prosody] = None


class TtsEngine(ABC):
    """
    Thin abstraction over a text-to-speech provider.

    Implementations are blocking; the orchestrator calls them from a worker
    thread. Provider failures must surface as ``TtsTransientError`` (worth a
    retry) or ``TtsValidationError`` (never retried).
    """

    @abstractmethod
    def synthesize(self, text: str, voice_id: str, prosody: Prosody) -> SynthesisResult:
        """
        Convert plain ``text`` into audio spoken by ``voice_id`` with ``prosody``.
        """

    def list_voices(self) -> List[str]:
        return [info.technical_name for info in VOICES.values()]

    def descriptor(self) -> str:
        return self.__class__.__name__


def classify_error(exc: BaseException) -> TtsError:
    """
    Map an arbitrary provider exception onto the pipeline's error taxonomy.

    Numeric gRPC/HTTP codes (8, 14, 429, 503) and messages mentioning quota,
    rate limits, unavailability, timeouts or dropped connections are transient;
    anything else is treated as a validation-class failure.
    """
    if isinstance(exc, TtsError):
        return exc

    message = str(exc) or exc.__class__.__name__
    code = _error_code(exc)
    rate_limited = code in (8, 429) or bool(RATE_LIMIT_MESSAGE_PATTERN.search(message))
    if code in RETRYABLE_CODES or RETRYABLE_MESSAGE_PATTERN.search(message) or rate_limited:
        return TtsTransientError(message, rate_limited=rate_limited)
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TtsTransientError(message)
    return TtsValidationError(message)


class GoogleCloudTtsEngine(TtsEngine):
    """
    Google Cloud Text-to-Speech implementation returning 16-bit WAV audio.
    """

    def __init__(
        self,
        *,
        language_code: str = "vi-VN",
        sample_rate: int = 24000,
        client: Optional[object] = None,
    ) -> None:
        try:
            from google.cloud import texttospeech  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "google-cloud-texttospeech is required for GoogleCloudTtsEngine but is not installed."
            ) from exc

        self._texttospeech = texttospeech
        self._client = client or texttospeech.TextToSpeechClient()
        self._language_code = language_code
        self._sample_rate = sample_rate

    def synthesize(self, text: str, voice_id: str, prosody: Prosody) -> SynthesisResult:
        from google.api_core import exceptions as google_exceptions  # type: ignore

        texttospeech = self._texttospeech
        ssml = build_ssml(text, prosody)
        synthesis_input = texttospeech.SynthesisInput(ssml=ssml)
        voice = texttospeech.VoiceSelectionParams(
            language_code=self._language_code,
            name=voice_id,
        )
        audio_config = texttospeech.AudioConfig(
            audio_encoding=texttospeech.AudioEncoding.LINEAR16,
            sample_rate_hertz=self._sample_rate,
        )

        logger.debug("Google TTS request: voice=%s, %d SSML chars", voice_id, len(ssml))
        try:
            response = self._client.synthesize_speech(
                input=synthesis_input, voice=voice, audio_config=audio_config
            )
        except google_exceptions.ResourceExhausted as exc:
            raise TtsTransientError(str(exc), rate_limited=True) from exc
        except (
            google_exceptions.ServiceUnavailable,
            google_exceptions.DeadlineExceeded,
            google_exceptions.InternalServerError,
        ) as exc:
            raise TtsTransientError(str(exc)) from exc
        except google_exceptions.InvalidArgument as exc:
            raise TtsValidationError(str(exc)) from exc
        except google_exceptions.GoogleAPICallError as exc:
            raise classify_error(exc) from exc

        if not response.audio_content:
            raise TtsTransientError("Google TTS returned empty audio content.")
        # LINEAR16 responses carry a RIFF header.
        return SynthesisResult(audio=response.audio_content, mime_type="audio/wav", prosody=prosody)

    def list_voices(self) -> List[str]:
        response = self._client.list_voices(language_code=self._language_code)
        return [voice.name for voice in response.voices]


class PollyTtsEngine(TtsEngine):
    """
    Amazon Polly implementation. PCM output is wrapped into WAV before it is
    returned so every fragment carries its own framing.
    """

    def __init__(
        self,
        *,
        voice_map: Optional[Dict[str, str]] = None,
        engine: str = "standard",
        language_code: Optional[str] = None,
        sample_rate: int = 16000,
        boto3_client: Optional[object] = None,
    ) -> None:
        try:
            import boto3  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "boto3 is required for PollyTtsEngine but is not installed."
            ) from exc

        self._client = boto3_client or boto3.client("polly")
        self._voice_map = voice_map or {}
        self._engine = engine
        self._language_code = language_code
        self._sample_rate = sample_rate

    def synthesize(self, text: str, voice_id: str, prosody: Prosody) -> SynthesisResult:
        params = {
            "Engine": self._engine,
            "VoiceId": self._voice_map.get(voice_id, voice_id),
            "OutputFormat": "pcm",
            "SampleRate": str(self._sample_rate),
            # Polly expresses rate as a percentage and ignores semitone pitch.
            "Text": build_ssml(text, prosody, rate_as_percent=True, include_pitch=False),
            "TextType": "ssml",
        }
        if self._language_code:
            params["LanguageCode"] = self._language_code

        logger.debug("Polly request params: %s", {k: v for k, v in params.items() if k != "Text"})
        try:
            response = self._client.synthesize_speech(**params)  # type: ignore[arg-type]
        except Exception as exc:
            raise _classify_polly_error(exc) from exc

        stream = response.get("AudioStream")
        if stream is None:
            raise TtsTransientError("Polly response did not include AudioStream.")

        audio_bytes = stream.read() if hasattr(stream, "read") else stream
        if not audio_bytes:
            raise TtsTransientError("Polly returned empty audio stream.")

        segment = AudioSegment(
            data=audio_bytes,
            sample_width=2,
            frame_rate=self._sample_rate,
            channels=1,
        )
        return SynthesisResult(audio=_export_wav(segment), mime_type="audio/wav", prosody=prosody)

    def list_voices(self) -> List[str]:
        if not self._voice_map:
            return super().list_voices()
        return list(self._voice_map)


class MockTtsEngine(TtsEngine):
    """
    Lightweight mock for tests. Generates silent WAV fragments of predictable
    lengths and can be scripted to fail for given texts.

    ``fail_texts`` maps a text to the exception raised on every attempt;
    ``transient_failures`` maps a text to the number of ``TtsTransientError``
    raised before the call succeeds.
    """

    def __init__(
        self,
        durations_ms: Optional[Dict[str, int]] = None,
        *,
        base_duration_ms: int = 200,
        per_char_ms: int = 5,
        sample_rate: int = 22050,
        fail_texts: Optional[Dict[str, BaseException]] = None,
        transient_failures: Optional[Dict[str, int]] = None,
        voices: Optional[List[str]] = None,
    ) -> None:
        self._durations_ms = durations_ms or {}
        self._base_duration_ms = base_duration_ms
        self._per_char_ms = per_char_ms
        self.sample_rate = sample_rate
        self._fail_texts = dict(fail_texts or {})
        self._transient_failures = dict(transient_failures or {})
        self._voices = voices
        self._lock = threading.Lock()
        self.calls: List[str] = []

    def synthesize(self, text: str, voice_id: str, prosody: Prosody) -> SynthesisResult:
        with self._lock:
            self.calls.append(text)
            if text in self._fail_texts:
                raise self._fail_texts[text]
            remaining = self._transient_failures.get(text, 0)
            if remaining > 0:
                self._transient_failures[text] = remaining - 1
                raise TtsTransientError("Mock engine is rate limited.", rate_limited=True)

        duration = self._durations_ms.get(
            text, self._base_duration_ms + max(0, len(text)) * self._per_char_ms
        )
        segment = AudioSegment.silent(duration=duration, frame_rate=self.sample_rate)
        return SynthesisResult(audio=_export_wav(segment), mime_type="audio/wav", prosody=prosody)

    def list_voices(self) -> List[str]:
        if self._voices is not None:
            return list(self._voices)
        return super().list_voices()


def _export_wav(segment: AudioSegment) -> bytes:
    buffer = io.BytesIO()
    segment.export(buffer, format="wav")
    return buffer.getvalue()


def _error_code(exc: BaseException) -> Optional[int]:
    for attr in ("code", "status_code", "status"):
        value = getattr(exc, attr, None)
        if callable(value):
            try:
                value = value()
            except TypeError:
                continue
        value = getattr(value, "value", value)
        if isinstance(value, tuple) and value:
            value = value[0]
        if isinstance(value, int):
            return value
    return None


def _classify_polly_error(exc: BaseException) -> TtsError:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        error = response.get("Error", {})
        code = str(error.get("Code", ""))
        message = str(error.get("Message", "")) or str(exc)
        if code in ("ThrottlingException", "TooManyRequestsException"):
            return TtsTransientError(message, rate_limited=True)
        if code in ("ServiceFailureException", "ServiceUnavailableException"):
            return TtsTransientError(message)
        if code in (
            "TextLengthExceededException",
            "InvalidSsmlException",
            "SsmlMarksNotSupportedForTextTypeException",
        ):
            return TtsValidationError(message)
    return classify_error(exc)
