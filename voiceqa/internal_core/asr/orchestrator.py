from __future__ import annotations

"""
Transcription retry ladder.

Design intent:
- Providers are synchronous and run in a worker thread; the cancellation
  token is checked before and after every provider call.
- An automatic ladder handles empty results and failures inside a retry.
- Explicit retries walk a fixed, named list of strategies in order.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from ..cancellation import CancellationToken
from ..contracts import TranscriptionOptions, TranscriptionResult
from ..session_store import SessionStore
from .base import SpeechProvider, TranscriptionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryStrategy:
    name: str
    speech_model: str
    use_enhanced: Optional[bool] = None
    enable_automatic_punctuation: Optional[bool] = None


RETRY_STRATEGIES: tuple[RetryStrategy, ...] = (
    RetryStrategy("standard_high_quality", speech_model="default", use_enhanced=True),
    RetryStrategy("long_form", speech_model="latest_long"),
    RetryStrategy(
        "standard_formatted",
        speech_model="default",
        use_enhanced=False,
        enable_automatic_punctuation=True,
    ),
)


def strategy_for(index: int) -> RetryStrategy:
    return RETRY_STRATEGIES[index % len(RETRY_STRATEGIES)]


def escalation_model(speech_speed: str) -> str:
    return "video" if speech_speed == "fast" else "latest_long"


def _check(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


class TranscriptionOrchestrator:
    def __init__(self, provider: SpeechProvider, store: SessionStore) -> None:
        self._provider = provider
        self._store = store

    @property
    def provider(self) -> SpeechProvider:
        return self._provider

    async def _call(
        self, audio_path: str, language_code: str, options: TranscriptionOptions
    ) -> TranscriptionResult:
        return await asyncio.to_thread(
            self._provider.transcribe, audio_path, language_code, options
        )

    async def transcribe(
        self,
        audio_path: str,
        language_code: str,
        options: Optional[TranscriptionOptions] = None,
        token: Optional[CancellationToken] = None,
    ) -> TranscriptionResult:
        options = options or TranscriptionOptions()
        _check(token)
        logger.info(
            "Transcribing %s (provider=%s lang=%s retry=%s model=%s)",
            audio_path,
            self._provider.name(),
            language_code,
            options.retry_attempt,
            options.speech_model or "default",
        )
        try:
            result = await self._call(audio_path, language_code, options)
        except TranscriptionError as exc:
            _check(token)
            if not options.retry_attempt:
                raise
            logger.warning(
                "Transcription failed during retry (%s: %s); trying simple settings",
                exc.code,
                exc.message,
            )
            simple = options.model_copy(update={"use_simple_settings": True})
            try:
                result = await self._call(audio_path, language_code, simple)
            except TranscriptionError as simple_exc:
                _check(token)
                logger.error("Simple-settings transcription also failed: %s", simple_exc.message)
                return TranscriptionResult(
                    transcript="",
                    audio_file=audio_path,
                    meta={"provider": self._provider.name(), "error": simple_exc.code},
                )
            _check(token)
            return result

        _check(token)
        if result.is_empty and not options.retry_attempt:
            model = escalation_model(options.speech_speed)
            logger.info("Empty transcript; retrying with model %s", model)
            escalated = options.model_copy(
                update={
                    "retry_attempt": True,
                    "speech_model": model,
                    "attempt_number": options.attempt_number + 1,
                }
            )
            return await self.transcribe(audio_path, language_code, escalated, token)
        return result

    async def retry(
        self,
        audio_path: str,
        language_code: str,
        options: Optional[TranscriptionOptions] = None,
        token: Optional[CancellationToken] = None,
    ) -> TranscriptionResult:
        """Explicit retry: next strategy in rotation for the session's current file."""
        index = self._store.take_retry_slot()
        strategy = strategy_for(index)
        logger.info("Retry attempt %d using strategy: %s", index + 1, strategy.name)
        base = options or TranscriptionOptions()
        retry_options = base.model_copy(
            update={
                "retry_attempt": True,
                "attempt_number": index + 1,
                "speech_model": strategy.speech_model,
                "use_enhanced": strategy.use_enhanced,
                "enable_automatic_punctuation": strategy.enable_automatic_punctuation,
                "strategy_name": strategy.name,
            }
        )
        return await self.transcribe(audio_path, language_code, retry_options, token)
