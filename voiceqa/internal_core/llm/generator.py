from __future__ import annotations

"""
Answer generation on top of a synchronous AnswerProvider.

Design intent:
- Batch and direct-audio calls run in a worker thread.
- Streaming goes through a bounded channel: a worker thread writes fragments,
  the async consumer reads them. Closing the channel (cancellation or consumer
  exit) stops the producer at its next fragment.
- Provider errors travel through the channel and re-raise on the consumer side.
"""

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Optional

from ..cancellation import CancellationToken
from ..contracts import AnswerRequest, DirectAudioResult, Lang
from .base import AnswerGenerationError, AnswerProvider
from .prompts import extract_transcript

logger = logging.getLogger(__name__)

_SLOT_POLL_SEC = 0.1


def _check(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


class AnswerGenerator:
    def __init__(self, provider: AnswerProvider, *, channel_size: int = 32) -> None:
        self._provider = provider
        self._channel_size = max(1, int(channel_size))

    @property
    def provider(self) -> AnswerProvider:
        return self._provider

    async def answer(self, request: AnswerRequest, token: Optional[CancellationToken] = None) -> str:
        _check(token)
        logger.info(
            "Generating answer (provider=%s lang=%s context=%s follow_up=%s)",
            self._provider.name(),
            request.lang,
            request.question_context,
            request.previous_question is not None,
        )
        text = await asyncio.to_thread(self._provider.generate_answer, request)
        _check(token)
        return text

    async def answer_stream(
        self, request: AnswerRequest, token: Optional[CancellationToken] = None
    ) -> AsyncIterator[str]:
        _check(token)
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        slots = threading.BoundedSemaphore(self._channel_size)
        closed = threading.Event()
        provider = self._provider

        def _deliver(kind: str, value: Any) -> None:
            if closed.is_set():
                return
            try:
                loop.call_soon_threadsafe(queue.put_nowait, (kind, value))
            except RuntimeError:
                # Event loop already gone; nobody is listening.
                closed.set()

        def _produce() -> None:
            try:
                for fragment in provider.stream_answer(request):
                    while not slots.acquire(timeout=_SLOT_POLL_SEC):
                        if closed.is_set():
                            return
                    if closed.is_set():
                        return
                    _deliver("chunk", fragment)
                _deliver("end", None)
            except Exception as exc:
                _deliver("error", exc)

        logger.info("Streaming answer (provider=%s)", provider.name())
        loop.run_in_executor(None, _produce)
        try:
            while True:
                kind, value = await queue.get()
                if kind == "chunk":
                    slots.release()
                _check(token)
                if kind == "end":
                    return
                if kind == "error":
                    if isinstance(value, AnswerGenerationError):
                        raise value
                    raise AnswerGenerationError("STREAM_FAILED", str(value), provider.name()) from value
                yield value
        finally:
            closed.set()

    async def process_audio_directly(
        self,
        audio_path: str,
        lang: Lang = "en",
        question_context: str = "general",
        custom_context: str = "",
        token: Optional[CancellationToken] = None,
        *,
        model: Optional[str] = None,
    ) -> DirectAudioResult:
        _check(token)
        answer = await asyncio.to_thread(
            self._provider.answer_from_audio,
            audio_path,
            lang,
            question_context,
            custom_context,
            model,
        )
        _check(token)
        transcript = extract_transcript(answer)
        logger.info("Extracted question(s) from direct audio answer: %s", transcript)
        return DirectAudioResult(transcript=transcript, answer=answer)
