from __future__ import annotations

"""
Local answer generation with llama-cpp-python.

Design intent:
- Load the GGUF model once, on first use, and reuse it across requests.
- Keep the chat_format compatibility fallback for older llama_cpp builds.
- Audio input is not something a text model can take; fail loudly instead.
"""

import logging
import os
from threading import Lock
from typing import Any, Iterator, Optional

from ..contracts import AnswerRequest, Lang
from .base import AnswerGenerationError, AnswerProvider
from .prompts import build_prompt

logger = logging.getLogger(__name__)


class LlamaCppAnswerProvider(AnswerProvider):
    def __init__(
        self,
        model_path: str,
        *,
        n_ctx: int = 4096,
        n_gpu_layers: int = -1,
        n_threads: Optional[int] = None,
        chat_format: str = "",
        max_tokens: int = 1024,
    ) -> None:
        self._model_path = (model_path or "").strip()
        self._n_ctx = int(n_ctx)
        self._n_gpu_layers = int(n_gpu_layers)
        self._n_threads = n_threads
        self._chat_format = chat_format
        self._max_tokens = int(max_tokens)
        self._llm: Any = None
        self._load_lock = Lock()

    def name(self) -> str:
        return "llama_cpp"

    def _get_llm(self) -> Any:
        with self._load_lock:
            if self._llm is not None:
                return self._llm
            if not self._model_path:
                raise AnswerGenerationError(
                    "LLAMA_MODEL_MISSING",
                    "Local model path is missing. Set VOICEQA_LLAMA_CPP_MODEL to a GGUF file.",
                    self.name(),
                )
            if not os.path.exists(self._model_path):
                raise AnswerGenerationError(
                    "LLAMA_MODEL_MISSING", f"Model file not found: {self._model_path}", self.name()
                )
            try:
                from llama_cpp import Llama  # type: ignore
            except Exception as exc:
                raise AnswerGenerationError(
                    "LLAMA_IMPORT", f"llama_cpp import failed: {exc}", self.name()
                ) from exc

            llm_kwargs: dict[str, Any] = {
                "model_path": self._model_path,
                "n_ctx": self._n_ctx,
                "n_gpu_layers": self._n_gpu_layers,
                "verbose": False,
            }
            if self._chat_format:
                llm_kwargs["chat_format"] = self._chat_format
            if self._n_threads is not None:
                llm_kwargs["n_threads"] = int(self._n_threads)
            logger.info("Loading llama_cpp model: %s", self._model_path)
            try:
                self._llm = Llama(**llm_kwargs)
            except TypeError as exc:
                if "chat_format" not in str(exc):
                    raise
                llm_kwargs.pop("chat_format", None)
                self._llm = Llama(**llm_kwargs)
            return self._llm

    def _completion_kwargs(self, request: AnswerRequest, *, stream: bool) -> dict[str, Any]:
        return {
            "messages": [{"role": "user", "content": build_prompt(request)}],
            "temperature": 0.2,
            "max_tokens": self._max_tokens,
            "stream": stream,
        }

    def generate_answer(self, request: AnswerRequest) -> str:
        llm = self._get_llm()
        try:
            resp = llm.create_chat_completion(**self._completion_kwargs(request, stream=False))
        except Exception as exc:
            raise AnswerGenerationError("LLAMA_COMPLETION_FAILED", str(exc), self.name()) from exc
        return str(resp["choices"][0]["message"]["content"] or "").strip()

    def stream_answer(self, request: AnswerRequest) -> Iterator[str]:
        llm = self._get_llm()
        try:
            for part in llm.create_chat_completion(**self._completion_kwargs(request, stream=True)):
                delta = part["choices"][0].get("delta") or {}
                text = delta.get("content")
                if text:
                    yield text
        except Exception as exc:
            raise AnswerGenerationError("LLAMA_STREAM_FAILED", str(exc), self.name()) from exc

    def answer_from_audio(
        self,
        audio_path: str,
        lang: Lang = "en",
        question_context: str = "general",
        custom_context: str = "",
        model: Optional[str] = None,
    ) -> str:
        raise AnswerGenerationError(
            "AUDIO_INPUT_UNSUPPORTED",
            "Direct audio processing requires the gemini backend",
            self.name(),
        )
