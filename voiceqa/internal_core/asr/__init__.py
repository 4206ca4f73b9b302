from __future__ import annotations

from .base import SpeechProvider, TranscriptionError
from .google_speech import GoogleSpeechProvider, build_recognition_kwargs
from .mock import MockSpeechProvider
from .orchestrator import RETRY_STRATEGIES, RetryStrategy, TranscriptionOrchestrator, strategy_for
from .whisper_cpp import WhisperCppProvider, whisper_cpp_available

__all__ = [
    "GoogleSpeechProvider",
    "MockSpeechProvider",
    "RETRY_STRATEGIES",
    "RetryStrategy",
    "SpeechProvider",
    "TranscriptionError",
    "TranscriptionOrchestrator",
    "WhisperCppProvider",
    "build_recognition_kwargs",
    "strategy_for",
    "whisper_cpp_available",
]
