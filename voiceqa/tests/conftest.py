from __future__ import annotations

import wave
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Optional

import pytest

from voiceqa.internal_core.asr.base import SpeechProvider
from voiceqa.internal_core.asr.orchestrator import TranscriptionOrchestrator
from voiceqa.internal_core.contracts import AnswerRequest, TranscriptionOptions, TranscriptionResult
from voiceqa.internal_core.events import EventPublisher
from voiceqa.internal_core.llm.base import AnswerGenerationError, AnswerProvider
from voiceqa.internal_core.llm.generator import AnswerGenerator
from voiceqa.internal_core.pipeline import VoicePipeline
from voiceqa.internal_core.recorder import RecordingManager
from voiceqa.internal_core.session_store import SessionStore


class CollectingPublisher(EventPublisher):
    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []
        self.on_event: Optional[Callable[[str, Any], Awaitable[None]]] = None

    async def emit(self, event, payload=None) -> None:
        self.events.append((event, payload))
        if self.on_event is not None:
            await self.on_event(event, payload)

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def payloads(self, name: str) -> list[Any]:
        return [payload for event, payload in self.events if event == name]


class ScriptedSpeechProvider(SpeechProvider):
    """Returns the scripted outcomes in order; the last one repeats."""

    def __init__(self, *outcomes: Any) -> None:
        self._outcomes = list(outcomes) or ["what is a closure?"]
        self.calls: list[tuple[str, str, TranscriptionOptions]] = []

    def transcribe(self, audio_path, language_code, options) -> TranscriptionResult:
        self.calls.append((audio_path, language_code, options))
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return TranscriptionResult(transcript=outcome, audio_file=audio_path)

    def name(self) -> str:
        return "scripted"


class ScriptedAnswerProvider(AnswerProvider):
    def __init__(
        self,
        answer: str = "**Closures** keep their scope.",
        chunks: Optional[list[str]] = None,
        *,
        error: Optional[Exception] = None,
        stream_error_after: Optional[int] = None,
        audio_answer: str = "Question 1: What is a closure?\n\nA closure keeps its scope.",
        models: Optional[list[dict]] = None,
    ) -> None:
        self._answer = answer
        self._chunks = chunks if chunks is not None else ["**Closures** ", "keep ", "their scope."]
        self._error = error
        self._stream_error_after = stream_error_after
        self._audio_answer = audio_answer
        self.requests: list[AnswerRequest] = []
        self.audio_calls: list[str] = []
        self.audio_models: list[Optional[str]] = []
        self._models = models or []

    def generate_answer(self, request: AnswerRequest) -> str:
        self.requests.append(request)
        if self._error is not None:
            raise self._error
        return self._answer

    def stream_answer(self, request: AnswerRequest) -> Iterator[str]:
        self.requests.append(request)
        for i, chunk in enumerate(self._chunks):
            if self._stream_error_after is not None and i == self._stream_error_after:
                raise self._error or AnswerGenerationError("BROKEN", "stream broke", self.name())
            yield chunk

    def answer_from_audio(
        self, audio_path, lang="en", question_context="general", custom_context="", model=None
    ) -> str:
        self.audio_calls.append(audio_path)
        self.audio_models.append(model)
        if self._error is not None:
            raise self._error
        return self._audio_answer

    def list_models(self) -> list[dict]:
        if self._error is not None:
            raise self._error
        return self._models

    def name(self) -> str:
        return "scripted"


def write_wav(path: Path, seconds: float = 0.1, rate: int = 16000) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(rate)
        wf.writeframes(b"\x00\x00" * int(rate * seconds))
    return path


@pytest.fixture
def publisher() -> CollectingPublisher:
    return CollectingPublisher()


@pytest.fixture
def fake_speech():
    return ScriptedSpeechProvider


@pytest.fixture
def fake_answers():
    return ScriptedAnswerProvider


@pytest.fixture
def audio_dir(tmp_path: Path) -> Path:
    path = tmp_path / "audio"
    path.mkdir()
    return path


@pytest.fixture
def wav_file(audio_dir: Path) -> Path:
    return write_wav(audio_dir / "1700000000000.wav")


@pytest.fixture
def make_pipeline(audio_dir: Path, publisher: CollectingPublisher):
    def _make(
        speech: Optional[SpeechProvider] = None,
        answers: Optional[AnswerProvider] = None,
        *,
        events: Optional[EventPublisher] = None,
        command_builder=None,
        channel_size: int = 32,
        stop_grace_sec: float = 0.0,
    ) -> VoicePipeline:
        store = SessionStore()
        sink = events or publisher
        recorder = RecordingManager(
            store,
            sink,
            audio_dir=audio_dir,
            capture_bin="unused",
            platform="linux",
            stop_grace_sec=stop_grace_sec,
            command_builder=command_builder,
        )
        return VoicePipeline(
            store,
            sink,
            recorder,
            TranscriptionOrchestrator(speech or ScriptedSpeechProvider(), store),
            AnswerGenerator(answers or ScriptedAnswerProvider(), channel_size=channel_size),
            audio_dir=audio_dir,
            cancel_rearm_sec=0.0,
            file_settle_sec=0.0,
        )

    return _make
