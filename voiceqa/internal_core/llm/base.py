from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterator, Optional

from ..contracts import AnswerRequest, Lang


class AnswerGenerationError(RuntimeError):
    def __init__(self, code: str, message: str, provider_name: str):
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider_name = provider_name


class AnswerProvider(ABC):
    @abstractmethod
    def generate_answer(self, request: AnswerRequest) -> str: ...

    @abstractmethod
    def stream_answer(self, request: AnswerRequest) -> Iterator[str]: ...

    @abstractmethod
    def answer_from_audio(
        self,
        audio_path: str,
        lang: Lang = "en",
        question_context: str = "general",
        custom_context: str = "",
        model: Optional[str] = None,
    ) -> str:
        """Answer a spoken question straight from audio; the reply labels each question it heard."""

    @abstractmethod
    def name(self) -> str: ...

    def list_models(self) -> list[dict]:
        """Models a client may pick per request; backends without a catalogue return none."""
        return []
