from __future__ import annotations

from .base import AnswerGenerationError, AnswerProvider
from .gemini import GeminiAnswerProvider
from .generator import AnswerGenerator
from .llama_cpp import LlamaCppAnswerProvider
from .mock import MockAnswerProvider
from .prompts import build_audio_prompt, build_prompt, extract_transcript

__all__ = [
    "AnswerGenerationError",
    "AnswerGenerator",
    "AnswerProvider",
    "GeminiAnswerProvider",
    "LlamaCppAnswerProvider",
    "MockAnswerProvider",
    "build_audio_prompt",
    "build_prompt",
    "extract_transcript",
]
