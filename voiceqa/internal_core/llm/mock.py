from __future__ import annotations

from typing import Iterator, Optional

from ..contracts import AnswerRequest, Lang
from .base import AnswerProvider
from .prompts import build_prompt


class MockAnswerProvider(AnswerProvider):
    """Deterministic answers for local development without model access."""

    def __init__(self, chunk_words: int = 4) -> None:
        self._chunk_words = max(1, int(chunk_words))
        self.last_prompt: str = ""

    def name(self) -> str:
        return "mock"

    def generate_answer(self, request: AnswerRequest) -> str:
        self.last_prompt = build_prompt(request)
        prefix = "(mock follow-up) " if request.previous_question else "(mock) "
        return f"{prefix}**Answer** to: {request.transcript}"

    def stream_answer(self, request: AnswerRequest) -> Iterator[str]:
        words = self.generate_answer(request).split(" ")
        for i in range(0, len(words), self._chunk_words):
            piece = " ".join(words[i : i + self._chunk_words])
            yield piece if i + self._chunk_words >= len(words) else piece + " "

    def answer_from_audio(
        self,
        audio_path: str,
        lang: Lang = "en",
        question_context: str = "general",
        custom_context: str = "",
        model: Optional[str] = None,
    ) -> str:
        label = "Câu hỏi" if lang == "vi" else "Question"
        return f"{label} 1: (mock) what was asked in the audio?\n\n(mock) **Answer**"
