import asyncio

import pytest

from voiceqa.internal_core.asr.base import TranscriptionError
from voiceqa.internal_core.asr.google_speech import build_recognition_kwargs
from voiceqa.internal_core.asr.orchestrator import RETRY_STRATEGIES, TranscriptionOrchestrator, strategy_for
from voiceqa.internal_core.asr.whisper_cpp import decoding_args, whisper_cpp_available
from voiceqa.internal_core.cancellation import CancellationToken
from voiceqa.internal_core.contracts import TranscriptionOptions
from voiceqa.internal_core.errors import CancelledMidOperation
from voiceqa.internal_core.session_store import SessionStore


def _failure(code: str = "API_DOWN") -> TranscriptionError:
    return TranscriptionError(code, "speech service unavailable", "scripted")


def test_first_attempt_success_is_returned_as_is(fake_speech) -> None:
    speech = fake_speech("What is a closure?")
    result = asyncio.run(TranscriptionOrchestrator(speech, SessionStore()).transcribe("a.wav", "en-US"))
    assert result.transcript == "What is a closure?"
    assert len(speech.calls) == 1
    assert speech.calls[0][2].retry_attempt is False


def test_empty_result_escalates_to_long_model(fake_speech) -> None:
    speech = fake_speech("", "What is hoisting?")
    result = asyncio.run(
        TranscriptionOrchestrator(speech, SessionStore()).transcribe(
            "a.wav", "en-US", TranscriptionOptions(speech_speed="normal")
        )
    )
    assert result.transcript == "What is hoisting?"
    escalated = speech.calls[1][2]
    assert escalated.retry_attempt is True
    assert escalated.speech_model == "latest_long"


def test_fast_speech_escalates_to_video_model(fake_speech) -> None:
    speech = fake_speech("", "")
    result = asyncio.run(
        TranscriptionOrchestrator(speech, SessionStore()).transcribe(
            "a.wav", "vi-VN", TranscriptionOptions(speech_speed="fast")
        )
    )
    assert result.is_empty
    assert len(speech.calls) == 2
    assert speech.calls[1][2].speech_model == "video"


def test_first_attempt_failure_propagates(fake_speech) -> None:
    speech = fake_speech(_failure())
    with pytest.raises(TranscriptionError):
        asyncio.run(TranscriptionOrchestrator(speech, SessionStore()).transcribe("a.wav", "en-US"))
    assert len(speech.calls) == 1


def test_failure_during_retry_falls_back_to_simple_settings(fake_speech) -> None:
    speech = fake_speech(_failure(), "Explain flexbox?")
    result = asyncio.run(
        TranscriptionOrchestrator(speech, SessionStore()).transcribe(
            "a.wav", "en-US", TranscriptionOptions(retry_attempt=True)
        )
    )
    assert result.transcript == "Explain flexbox?"
    assert speech.calls[1][2].use_simple_settings is True


def test_failure_of_simple_settings_becomes_empty_result(fake_speech) -> None:
    speech = fake_speech(_failure(), _failure("STILL_DOWN"))
    result = asyncio.run(
        TranscriptionOrchestrator(speech, SessionStore()).transcribe(
            "a.wav", "en-US", TranscriptionOptions(retry_attempt=True)
        )
    )
    assert result.is_empty
    assert len(speech.calls) == 2


def test_explicit_retries_cycle_through_named_strategies(fake_speech) -> None:
    store = SessionStore()
    speech = fake_speech("What is a promise?")
    orchestrator = TranscriptionOrchestrator(speech, store)

    async def scenario() -> None:
        for _ in range(4):
            await orchestrator.retry("a.wav", "en-US")

    asyncio.run(scenario())
    used = [call[2].strategy_name for call in speech.calls]
    assert used == ["standard_high_quality", "long_form", "standard_formatted", "standard_high_quality"]
    assert [call[2].attempt_number for call in speech.calls] == [1, 2, 3, 4]
    assert all(call[2].retry_attempt for call in speech.calls)
    assert store.retry_count == 4


def test_strategy_for_wraps_around() -> None:
    assert len(RETRY_STRATEGIES) == 3
    assert strategy_for(3) == RETRY_STRATEGIES[0]
    assert strategy_for(5).name == "standard_formatted"


def test_cancelled_token_skips_provider(fake_speech) -> None:
    speech = fake_speech("ignored")
    token = CancellationToken("test")
    token.cancel()
    with pytest.raises(CancelledMidOperation):
        asyncio.run(
            TranscriptionOrchestrator(speech, SessionStore()).transcribe("a.wav", "en-US", token=token)
        )
    assert speech.calls == []


def test_recognition_kwargs_simple_settings_are_bare() -> None:
    kwargs = build_recognition_kwargs(
        "vi-VN", TranscriptionOptions(use_simple_settings=True), encoding="LINEAR16", sample_rate_hz=16000
    )
    assert kwargs == {"language_code": "vi-VN", "encoding": "LINEAR16", "sample_rate_hertz": 16000}


def test_recognition_kwargs_defaults_and_strategy_overrides() -> None:
    default = build_recognition_kwargs("en-US", TranscriptionOptions())
    assert default["model"] == "latest_short"
    assert default["use_enhanced"] is True
    assert default["enable_automatic_punctuation"] is True

    formatted = build_recognition_kwargs(
        "en-US",
        TranscriptionOptions(speech_model="default", use_enhanced=False, enable_automatic_punctuation=True),
    )
    assert formatted["model"] == "default"
    assert formatted["use_enhanced"] is False


def test_whisper_decoding_profiles() -> None:
    assert decoding_args(TranscriptionOptions(use_simple_settings=True)) == ["-bs", "1", "-bo", "1"]
    assert decoding_args(TranscriptionOptions(speech_model="latest_long")) == ["-bs", "8", "-bo", "8"]
    assert decoding_args(TranscriptionOptions()) == ["-bs", "5", "-bo", "5"]


def test_whisper_availability_reports_missing_model() -> None:
    ok, reason = whisper_cpp_available("whisper-cli", "")
    assert ok is False
    assert "VOICEQA_WHISPER_CPP_MODEL" in reason
