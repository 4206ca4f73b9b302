from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Optional, Tuple

from ..audio_files import load_wav_info
from ..contracts import TranscriptionOptions, TranscriptionResult
from .base import SpeechProvider, TranscriptionError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "latest_short"

# suffix -> (AudioEncoding member name, sample rate or None to let the API read the header)
_ENCODING_BY_SUFFIX: dict[str, Tuple[str, Optional[int]]] = {
    ".wav": ("LINEAR16", None),
    ".webm": ("WEBM_OPUS", 48000),
    ".ogg": ("OGG_OPUS", 48000),
    ".mp3": ("MP3", None),
}


def build_recognition_kwargs(
    language_code: str,
    options: TranscriptionOptions,
    *,
    encoding: Optional[str] = None,
    sample_rate_hz: Optional[int] = None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"language_code": language_code}
    if encoding:
        kwargs["encoding"] = encoding
    if sample_rate_hz:
        kwargs["sample_rate_hertz"] = int(sample_rate_hz)
    if options.use_simple_settings:
        return kwargs

    kwargs["model"] = options.speech_model or DEFAULT_MODEL
    kwargs["use_enhanced"] = True if options.use_enhanced is None else bool(options.use_enhanced)
    kwargs["enable_automatic_punctuation"] = (
        True
        if options.enable_automatic_punctuation is None
        else bool(options.enable_automatic_punctuation)
    )
    return kwargs


def _encoding_for(path: Path) -> Tuple[Optional[str], Optional[int]]:
    encoding, rate = _ENCODING_BY_SUFFIX.get(path.suffix.lower(), (None, None))
    if encoding == "LINEAR16":
        try:
            _, rate, _ = load_wav_info(path)
        except Exception:
            rate = None
    return encoding, rate


class GoogleSpeechProvider(SpeechProvider):
    """Google Speech-to-Text (synchronous recognize) backend."""

    def __init__(self, credentials_path: str = "", timeout_sec: int = 60) -> None:
        self._credentials_path = credentials_path
        self._timeout_sec = int(timeout_sec)
        self._client: Any = None

    def name(self) -> str:
        return "google_speech"

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from google.cloud import speech  # type: ignore
            from google.oauth2 import service_account  # type: ignore
        except ImportError as exc:
            raise TranscriptionError(
                "GOOGLE_SPEECH_IMPORT", f"google-cloud-speech import failed: {exc}", self.name()
            ) from exc

        if self._credentials_path:
            logger.info("Loading Google credentials from: %s", self._credentials_path)
            credentials = service_account.Credentials.from_service_account_file(
                self._credentials_path
            )
            self._client = speech.SpeechClient(credentials=credentials)
        else:
            # Application default credentials.
            self._client = speech.SpeechClient()
        return self._client

    def transcribe(
        self, audio_path: str, language_code: str, options: TranscriptionOptions
    ) -> TranscriptionResult:
        from google.api_core import exceptions as gax_exceptions  # type: ignore
        from google.cloud import speech  # type: ignore

        path = Path(audio_path)
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise TranscriptionError("AUDIO_READ_FAILED", str(exc), self.name()) from exc
        if not content:
            raise TranscriptionError("AUDIO_EMPTY", "Audio file is empty", self.name())
        if len(content) < 1000:
            logger.warning("Audio file is very small (%d bytes)", len(content))

        encoding_name, rate = _encoding_for(path)
        encoding = (
            getattr(speech.RecognitionConfig.AudioEncoding, encoding_name, None)
            if encoding_name
            else None
        )
        kwargs = build_recognition_kwargs(
            language_code, options, encoding=encoding, sample_rate_hz=rate
        )
        logger.info(
            "Google STT request: file=%s model=%s simple=%s retry=%s",
            path.name,
            kwargs.get("model", "(api default)"),
            options.use_simple_settings,
            options.retry_attempt,
        )

        client = self._get_client()
        start = time.time()
        try:
            response = client.recognize(
                config=speech.RecognitionConfig(**kwargs),
                audio=speech.RecognitionAudio(content=content),
                timeout=float(self._timeout_sec),
            )
        except gax_exceptions.DeadlineExceeded as exc:
            raise TranscriptionError("GOOGLE_TIMEOUT", f"Google Speech recognize timeout: {exc}", self.name()) from exc
        except gax_exceptions.GoogleAPICallError as exc:
            raise TranscriptionError("GOOGLE_API_ERROR", f"Google Speech API error: {exc}", self.name()) from exc

        pieces: list[str] = []
        confidences: list[float] = []
        for result in response.results:
            if not result.alternatives:
                continue
            alternative = result.alternatives[0]
            pieces.append(alternative.transcript.strip())
            confidences.append(float(alternative.confidence))

        transcript = " ".join(p for p in pieces if p).strip()
        return TranscriptionResult(
            transcript=transcript,
            audio_file=str(path),
            meta={
                "provider": self.name(),
                "model": kwargs.get("model"),
                "confidence": (sum(confidences) / len(confidences)) if confidences else None,
                "processing_sec": round(time.time() - start, 3),
            },
        )
