from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Iterator, Optional

from ..contracts import AnswerRequest, Lang
from .base import AnswerGenerationError, AnswerProvider
from .prompts import build_audio_prompt, build_prompt

logger = logging.getLogger(__name__)

_AUDIO_MIME_TYPES = {
    ".wav": "audio/wav",
    ".webm": "audio/webm",
    ".ogg": "audio/ogg",
    ".mp3": "audio/mp3",
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".aac": "audio/aac",
}


def audio_mime_type(path: Path) -> str:
    return _AUDIO_MIME_TYPES.get(path.suffix.lower(), "audio/wav")


_GEMINI_VERSION = re.compile(r"gemini[/-](\d+(?:\.\d+)?)", re.IGNORECASE)


def supports_answering(name: str, actions) -> bool:
    """Selectable models: Gemini text generators newer than 2.0."""
    if "generateContent" not in (actions or ()):
        return False
    if "gemini" not in name.lower():
        return False
    match = _GEMINI_VERSION.search(name)
    if match and float(match.group(1)) <= 2.0:
        return False
    return True


class GeminiAnswerProvider(AnswerProvider):
    """Answers through the Gemini API (`google-genai`)."""

    def __init__(self, api_key: str, model_name: str = "gemini-2.5-flash", max_tokens: int = 1024):
        if not api_key:
            raise AnswerGenerationError(
                "GEMINI_API_KEY_MISSING",
                "Gemini API key is missing. Set VOICEQA_GEMINI_API_KEY (or GEMINI_API_KEY).",
                self.name(),
            )
        try:
            from google import genai  # type: ignore
        except ImportError as exc:
            raise AnswerGenerationError(
                "GEMINI_IMPORT", f"google-genai import failed: {exc}", self.name()
            ) from exc
        self._client = genai.Client(api_key=api_key)
        self._model_name = model_name
        self._max_tokens = int(max_tokens)

    def name(self) -> str:
        return "gemini"

    def _config(self) -> dict[str, Any]:
        return {"max_output_tokens": self._max_tokens}

    def _model_for(self, model: Optional[str]) -> str:
        return (model or "").strip() or self._model_name

    def generate_answer(self, request: AnswerRequest) -> str:
        prompt = build_prompt(request)
        try:
            response = self._client.models.generate_content(
                model=self._model_for(request.model), contents=prompt, config=self._config()
            )
        except Exception as exc:
            raise AnswerGenerationError("GEMINI_REQUEST_FAILED", str(exc), self.name()) from exc
        return response.text or ""

    def stream_answer(self, request: AnswerRequest) -> Iterator[str]:
        prompt = build_prompt(request)
        try:
            for chunk in self._client.models.generate_content_stream(
                model=self._model_for(request.model), contents=prompt, config=self._config()
            ):
                text = chunk.text
                if text:
                    yield text
        except Exception as exc:
            raise AnswerGenerationError("GEMINI_STREAM_FAILED", str(exc), self.name()) from exc

    def answer_from_audio(
        self,
        audio_path: str,
        lang: Lang = "en",
        question_context: str = "general",
        custom_context: str = "",
        model: Optional[str] = None,
    ) -> str:
        from google.genai.types import Part  # type: ignore

        path = Path(audio_path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise AnswerGenerationError("AUDIO_READ_FAILED", str(exc), self.name()) from exc

        logger.info("Processing audio directly with Gemini: %s", path)
        audio_part = Part.from_bytes(data=data, mime_type=audio_mime_type(path))
        prompt = build_audio_prompt(lang, question_context, custom_context)
        try:
            response = self._client.models.generate_content(
                model=self._model_for(model), contents=[audio_part, prompt], config=self._config()
            )
        except Exception as exc:
            raise AnswerGenerationError("GEMINI_REQUEST_FAILED", str(exc), self.name()) from exc
        return response.text or ""

    def list_models(self) -> list[dict]:
        try:
            models = list(self._client.models.list())
        except Exception as exc:
            raise AnswerGenerationError("GEMINI_MODELS_FAILED", str(exc), self.name()) from exc
        summaries = []
        for item in models:
            name = getattr(item, "name", None) or ""
            actions = list(getattr(item, "supported_actions", None) or [])
            if not supports_answering(name, actions):
                continue
            summaries.append(
                {
                    "name": name,
                    "displayName": getattr(item, "display_name", None),
                    "description": getattr(item, "description", None),
                    "inputTokenLimit": getattr(item, "input_token_limit", None),
                    "outputTokenLimit": getattr(item, "output_token_limit", None),
                    "supportedGenerationMethods": actions,
                }
            )
        logger.info("Gemini offers %d selectable models", len(summaries))
        return summaries
