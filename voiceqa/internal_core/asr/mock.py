from __future__ import annotations

from ..contracts import TranscriptionOptions, TranscriptionResult
from .base import SpeechProvider


class MockSpeechProvider(SpeechProvider):
    def __init__(self, transcript: str = "(mock) what is the virtual DOM?") -> None:
        self._transcript = transcript
        self._counter = 0

    def transcribe(
        self, audio_path: str, language_code: str, options: TranscriptionOptions
    ) -> TranscriptionResult:
        self._counter += 1
        return TranscriptionResult(
            transcript=self._transcript,
            audio_file=audio_path,
            meta={
                "provider": self.name(),
                "call": self._counter,
                "speech_model": options.speech_model,
            },
        )

    def name(self) -> str:
        return "mock"
