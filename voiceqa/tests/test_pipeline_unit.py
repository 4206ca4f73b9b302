import asyncio
import logging
import sys
from pathlib import Path

import pytest

from voiceqa.internal_core.asr.base import TranscriptionError
from voiceqa.internal_core.contracts import RequestParams
from voiceqa.internal_core.errors import AlreadyRecording, MissingTranscript, NoAudioAvailable, NotRecording
from voiceqa.internal_core.llm.base import AnswerGenerationError
from voiceqa.internal_core.llm.prompts import UNEXTRACTABLE_TRANSCRIPT
from voiceqa.internal_core.pipeline import APOLOGIES


def _params(**payload) -> RequestParams:
    return RequestParams.from_payload(payload)


def test_batch_upload_publishes_processing_then_update(make_pipeline, publisher, fake_answers, wav_file) -> None:
    answers = fake_answers(answer="A **closure** keeps scope.")
    pipeline = make_pipeline(answers=answers)
    outcome = asyncio.run(
        pipeline.process_upload(wav_file, _params(language="en", useStreaming=False, questionContext="reactjs"))
    )
    assert outcome.status == "completed"
    assert publisher.names() == ["processing", "update"]
    assert publisher.payloads("update")[0] == {
        "transcript": "what is a closure?",
        "answer": "A **closure** keeps scope.",
        "audioFile": str(wav_file),
        "isFollowUp": False,
        "processedDirectly": False,
    }
    assert answers.requests[0].question_context == "reactjs"
    assert answers.requests[0].lang == "en"
    assert pipeline.store.last_question == "what is a closure?"
    assert pipeline.store.last_processed_file == str(wav_file)


def test_streaming_publishes_transcript_chunks_and_end(make_pipeline, publisher, wav_file) -> None:
    pipeline = make_pipeline()
    outcome = asyncio.run(pipeline.process_upload(wav_file, _params(language="en")))
    assert outcome.status == "completed"
    assert publisher.names() == ["processing", "transcript", "streamChunk", "streamChunk", "streamChunk", "streamEnd"]
    assert publisher.payloads("transcript") == [{"transcript": "what is a closure?"}]
    chunks = [p["chunk"] for p in publisher.payloads("streamChunk")]
    end = publisher.payloads("streamEnd")[0]
    assert end["fullAnswer"] == "".join(chunks) == "**Closures** keep their scope."
    assert end["audioFile"] == str(wav_file)
    assert end["isFollowUp"] is False
    assert end["processedDirectly"] is False


@pytest.mark.parametrize("language, apology", [("en", APOLOGIES["en"]), ("vi", APOLOGIES["vi"])])
def test_empty_transcript_gets_apology_without_answer(
    make_pipeline, publisher, fake_speech, fake_answers, wav_file, language, apology
) -> None:
    answers = fake_answers()
    pipeline = make_pipeline(speech=fake_speech(""), answers=answers)
    outcome = asyncio.run(pipeline.process_upload(wav_file, _params(language=language)))
    assert outcome.status == "completed"
    assert publisher.names() == ["processing", "update"]
    assert publisher.payloads("update")[0] == {"transcript": "", "answer": apology, "audioFile": str(wav_file)}
    assert answers.requests == []


def test_first_transcription_failure_becomes_apology(make_pipeline, publisher, fake_speech, wav_file) -> None:
    speech = fake_speech(TranscriptionError("API_DOWN", "quota exceeded", "scripted"))
    pipeline = make_pipeline(speech=speech)
    outcome = asyncio.run(pipeline.process_upload(wav_file, _params(language="en")))
    assert outcome.status == "completed"
    assert publisher.names() == ["processing", "update"]
    assert publisher.payloads("update")[0]["answer"] == APOLOGIES["en"]


def test_empty_file_reports_error_and_error_update(make_pipeline, publisher, audio_dir: Path) -> None:
    empty = audio_dir / "empty.wav"
    empty.write_bytes(b"")
    pipeline = make_pipeline()
    outcome = asyncio.run(pipeline.process_upload(empty, _params(language="en")))
    assert outcome.status == "failed"
    assert publisher.names() == ["processing", "error", "update"]
    update = publisher.payloads("update")[0]
    assert update["transcript"] == ""
    assert update["answer"].startswith("Error: ")
    assert update["error"] == outcome.message


def test_answer_failure_in_batch_mode_reports_error(make_pipeline, publisher, fake_answers, wav_file) -> None:
    answers = fake_answers(error=AnswerGenerationError("GEMINI_FAILED", "model overloaded", "scripted"))
    pipeline = make_pipeline(answers=answers)
    outcome = asyncio.run(pipeline.process_upload(wav_file, _params(useStreaming=False)))
    assert outcome.status == "failed"
    assert publisher.payloads("error") == [{"message": "model overloaded"}]
    assert publisher.payloads("update")[0]["answer"] == "Lỗi: model overloaded"


def test_follow_up_carries_previous_question(make_pipeline, fake_speech, fake_answers, wav_file) -> None:
    answers = fake_answers()
    pipeline = make_pipeline(speech=fake_speech("What is a closure?", "Can you show an example?"), answers=answers)

    async def scenario() -> None:
        await pipeline.process_upload(wav_file, _params(language="en"))
        await pipeline.process_upload(wav_file, _params(language="en", isFollowUp=True))

    asyncio.run(scenario())
    assert answers.requests[0].previous_question is None
    assert answers.requests[1].previous_question == "What is a closure?"
    assert pipeline.store.last_question == "What is a closure?"


def test_follow_up_without_history_answers_standalone(make_pipeline, publisher, fake_answers, wav_file) -> None:
    answers = fake_answers()
    pipeline = make_pipeline(answers=answers)
    outcome = asyncio.run(pipeline.process_upload(wav_file, _params(isFollowUp="true")))
    assert outcome.status == "completed"
    assert answers.requests[0].previous_question is None
    assert publisher.payloads("streamEnd")[0]["isFollowUp"] is True


def test_follow_up_without_history_is_logged(make_pipeline, fake_answers, wav_file, caplog) -> None:
    pipeline = make_pipeline(answers=fake_answers())
    with caplog.at_level(logging.WARNING, logger="voiceqa.internal_core.pipeline"):
        asyncio.run(pipeline.process_upload(wav_file, _params(isFollowUp=True, useStreaming=False)))
    assert any("no previous question" in record.getMessage() for record in caplog.records)


def test_follow_up_with_history_is_not_logged(make_pipeline, fake_answers, wav_file, caplog) -> None:
    pipeline = make_pipeline(answers=fake_answers())
    pipeline.store.set_last_question("What is a closure?")
    with caplog.at_level(logging.WARNING, logger="voiceqa.internal_core.pipeline"):
        asyncio.run(pipeline.process_upload(wav_file, _params(isFollowUp=True, useStreaming=False)))
    assert not any("no previous question" in record.getMessage() for record in caplog.records)


def test_requested_model_reaches_answer_request(make_pipeline, fake_answers, wav_file) -> None:
    answers = fake_answers()
    pipeline = make_pipeline(answers=answers)

    async def scenario() -> None:
        await pipeline.process_upload(wav_file, _params(model="gemini-2.5-pro"))
        await pipeline.process_upload(wav_file, _params(useStreaming=False))

    asyncio.run(scenario())
    assert [request.model for request in answers.requests] == ["gemini-2.5-pro", None]


def test_retries_rotate_strategies_on_last_file(make_pipeline, publisher, fake_speech, wav_file) -> None:
    speech = fake_speech("What is a closure?")
    pipeline = make_pipeline(speech=speech)

    async def scenario() -> None:
        await pipeline.process_upload(wav_file, _params(useStreaming=False))
        for _ in range(4):
            await pipeline.retry(_params(useStreaming=False))

    asyncio.run(scenario())
    strategies = [call[2].strategy_name for call in speech.calls]
    assert strategies == [
        None,
        "standard_high_quality",
        "long_form",
        "standard_formatted",
        "standard_high_quality",
    ]
    assert all(call[0] == str(wav_file) for call in speech.calls)
    assert pipeline.store.retry_count == 4
    assert publisher.names().count("update") == 5


def test_retry_without_audio_is_rejected(make_pipeline, publisher) -> None:
    pipeline = make_pipeline()
    with pytest.raises(NoAudioAvailable):
        asyncio.run(pipeline.retry(_params()))
    assert publisher.events == [("error", {"message": "No audio file available for retry"})]


def test_cancel_during_processing_suppresses_everything_after(make_pipeline, publisher, wav_file) -> None:
    pipeline = make_pipeline()

    async def cancel_on_processing(event, payload) -> None:
        if event == "processing":
            await pipeline.cancel()

    publisher.on_event = cancel_on_processing
    outcome = asyncio.run(pipeline.process_upload(wav_file, _params()))
    assert outcome.status == "cancelled"
    assert publisher.names() == ["processing", "processingCancelled"]


def test_cancel_mid_stream_stops_chunks(make_pipeline, publisher, fake_answers, wav_file) -> None:
    answers = fake_answers(chunks=["one ", "two ", "three ", "four ", "five"])
    pipeline = make_pipeline(answers=answers, channel_size=1)
    seen = {"chunks": 0}

    async def cancel_after_two(event, payload) -> None:
        if event == "streamChunk":
            seen["chunks"] += 1
            if seen["chunks"] == 2:
                await pipeline.cancel()

    publisher.on_event = cancel_after_two
    outcome = asyncio.run(pipeline.process_upload(wav_file, _params()))
    assert outcome.status == "cancelled"
    assert publisher.names() == ["processing", "transcript", "streamChunk", "streamChunk", "processingCancelled"]
    assert pipeline.cancellation.active_operations == []


def test_new_operation_after_cancel_runs_normally(make_pipeline, publisher, wav_file) -> None:
    pipeline = make_pipeline()

    async def scenario():
        await pipeline.cancel()
        return await pipeline.process_upload(wav_file, _params(useStreaming=False))

    outcome = asyncio.run(scenario())
    assert outcome.status == "completed"
    assert publisher.names() == ["processingCancelled", "processing", "update"]


def test_direct_processing_streams_extracted_question(make_pipeline, publisher, fake_answers, wav_file) -> None:
    answers = fake_answers()
    pipeline = make_pipeline(answers=answers)
    pipeline.store.set_last_processed_file(str(wav_file))
    pipeline.store.set_retry_count(2)
    outcome = asyncio.run(pipeline.process_directly(_params(language="en")))
    assert outcome.status == "completed"
    assert publisher.names()[:2] == ["processing", "transcript"]
    assert publisher.payloads("transcript") == [{"transcript": "What is a closure?", "processedDirectly": True}]
    assert all(p["processedDirectly"] for p in publisher.payloads("streamChunk"))
    assert publisher.payloads("streamEnd")[0]["processedDirectly"] is True
    assert answers.audio_calls == [str(wav_file)]
    assert answers.audio_models == [None]
    assert pipeline.store.retry_count == 0
    assert pipeline.store.last_question == "What is a closure?"


def test_direct_processing_batch_update(make_pipeline, publisher, fake_answers, wav_file) -> None:
    answers = fake_answers(audio_answer="x" * 300)
    pipeline = make_pipeline(answers=answers)
    outcome = asyncio.run(pipeline.process_directly(_params(audioFile=str(wav_file), useStreaming=False)))
    assert outcome.status == "completed"
    update = publisher.payloads("update")[0]
    assert update["processedDirectly"] is True
    assert update["answer"] == "x" * 300
    assert update["transcript"] == UNEXTRACTABLE_TRANSCRIPT


def test_direct_processing_without_audio_is_rejected(make_pipeline, publisher) -> None:
    with pytest.raises(NoAudioAvailable):
        asyncio.run(make_pipeline().process_directly(_params()))
    assert publisher.payloads("error") == [{"message": "No audio file available for Gemini processing"}]


def test_stream_transcript_requires_text(make_pipeline, publisher) -> None:
    with pytest.raises(MissingTranscript):
        asyncio.run(make_pipeline().stream_transcript("   ", _params()))
    assert publisher.names() == ["error"]


def test_stream_transcript_uses_previous_question_only_for_follow_ups(
    make_pipeline, publisher, fake_answers
) -> None:
    answers = fake_answers()
    pipeline = make_pipeline(answers=answers)
    pipeline.store.set_last_question("What is a closure?")

    async def scenario() -> None:
        await pipeline.stream_transcript("Explain hoisting", _params())
        await pipeline.stream_transcript("Show an example", _params(isFollowUp=True))

    asyncio.run(scenario())
    assert answers.requests[0].previous_question is None
    assert answers.requests[1].previous_question == "What is a closure?"
    assert publisher.names().count("streamEnd") == 2


def test_stream_failure_emits_only_stream_error(make_pipeline, publisher, fake_answers, wav_file) -> None:
    answers = fake_answers(chunks=["one ", "two "], stream_error_after=1)
    pipeline = make_pipeline(answers=answers)
    outcome = asyncio.run(pipeline.process_upload(wav_file, _params()))
    assert outcome.status == "failed"
    assert publisher.names() == ["processing", "transcript", "streamChunk", "streamError"]
    assert publisher.payloads("streamError") == [{"error": "stream broke"}]


def test_clear_audio_files_resets_context(make_pipeline, wav_file, audio_dir: Path) -> None:
    pipeline = make_pipeline()
    pipeline.store.set_last_processed_file(str(wav_file))
    pipeline.store.set_last_question("What is a closure?")
    assert pipeline.clear_audio_files() == 1
    assert list(audio_dir.iterdir()) == []
    snapshot = pipeline.status()
    assert snapshot.last_processed_file is None
    assert snapshot.has_last_question is False


def test_clear_audio_files_refused_while_recording(make_pipeline) -> None:
    pipeline = make_pipeline()
    pipeline.store.set_recording(True)
    with pytest.raises(AlreadyRecording):
        pipeline.clear_audio_files()


def test_stop_without_recording_is_rejected(make_pipeline, publisher) -> None:
    with pytest.raises(NotRecording):
        asyncio.run(make_pipeline().stop_and_process(_params()))
    assert publisher.names() == ["error"]


def _write_wav_and_wait(capture_bin, output, duration, speech_speed, platform):
    script = (
        "import sys, time, wave\n"
        "with wave.open(sys.argv[1], 'wb') as wf:\n"
        "    wf.setnchannels(1); wf.setsampwidth(2); wf.setframerate(16000)\n"
        "    wf.writeframes(b'\\x00\\x00' * 1600)\n"
        "try:\n"
        "    time.sleep(30)\n"
        "except KeyboardInterrupt:\n"
        "    pass\n"
    )
    return [sys.executable, "-c", script, str(output)]


def test_record_stop_and_answer_end_to_end(make_pipeline, publisher, fake_speech) -> None:
    speech = fake_speech("How does the event loop work?")
    pipeline = make_pipeline(speech=speech, command_builder=_write_wav_and_wait)

    async def scenario():
        output = await pipeline.start_recording(duration=10)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 5
        while not (output.exists() and output.stat().st_size > 44):
            assert loop.time() < deadline, "capture never wrote audio"
            await asyncio.sleep(0.02)
        outcome = await pipeline.stop_and_process(_params(language="en", useStreaming=False))
        await pipeline.shutdown()
        return output, outcome

    output, outcome = asyncio.run(scenario())
    assert outcome.status == "completed"
    assert speech.calls[0][0] == str(output)
    assert speech.calls[0][1] == "en-US"
    assert publisher.names() == ["processing", "update"]
    assert publisher.payloads("update")[0]["transcript"] == "How does the event loop work?"


def test_direct_processing_passes_requested_model(make_pipeline, fake_answers, wav_file) -> None:
    answers = fake_answers()
    pipeline = make_pipeline(answers=answers)
    asyncio.run(pipeline.process_directly(_params(audioFile=str(wav_file), model="gemini-3-pro")))
    assert answers.audio_models == ["gemini-3-pro"]


def test_cancel_during_stop_grace_window_suppresses_processing(make_pipeline, publisher, fake_speech) -> None:
    speech = fake_speech("How does the event loop work?")
    pipeline = make_pipeline(speech=speech, command_builder=_write_wav_and_wait, stop_grace_sec=0.5)

    async def scenario():
        output = await pipeline.start_recording(duration=10)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 5
        while not (output.exists() and output.stat().st_size > 44):
            assert loop.time() < deadline, "capture never wrote audio"
            await asyncio.sleep(0.02)
        task = asyncio.create_task(pipeline.stop_and_process(_params(language="en", useStreaming=False)))
        await asyncio.sleep(0.1)
        await pipeline.cancel()
        outcome = await task
        await pipeline.shutdown()
        return outcome

    outcome = asyncio.run(scenario())
    assert outcome.status == "cancelled"
    assert publisher.names() == ["processingCancelled"]
    assert speech.calls == []
    assert pipeline.cancellation.active_operations == []
