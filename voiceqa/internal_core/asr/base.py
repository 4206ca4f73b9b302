from __future__ import annotations

from abc import ABC, abstractmethod

from ..contracts import TranscriptionOptions, TranscriptionResult


class TranscriptionError(RuntimeError):
    def __init__(self, code: str, message: str, provider_name: str):
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider_name = provider_name


class SpeechProvider(ABC):
    @abstractmethod
    def transcribe(
        self, audio_path: str, language_code: str, options: TranscriptionOptions
    ) -> TranscriptionResult: ...

    @abstractmethod
    def name(self) -> str: ...
