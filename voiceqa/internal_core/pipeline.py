from __future__ import annotations

"""
Coordinator for one spoken-question operation at a time.

Design intent:
- Every operation gets its own cancellation token; nothing is published for
  an operation once its token is cancelled.
- Per operation the client sees `processing`, then `transcript`, chunks and
  `streamEnd` (streaming), or a single `update` (batch). Errors cut the
  sequence short.
- Files in the audio directory are only removed by recording start and the
  explicit clear request, never mid-operation.
"""

import logging
from contextlib import aclosing
from pathlib import Path
from typing import Any, Optional

from .asr.base import TranscriptionError
from .asr.orchestrator import TranscriptionOrchestrator
from .audio_files import purge_audio_dir, validate_audio_file
from .cancellation import CancellationController, CancellationToken
from .contracts import (
    AnswerRequest,
    AnswerResult,
    OperationOutcome,
    RequestParams,
    SessionSnapshot,
    TranscriptionOptions,
    TranscriptionResult,
)
from .errors import (
    AlreadyRecording,
    CancelledMidOperation,
    MissingTranscript,
    NoAudioAvailable,
    NotRecording,
    PipelineError,
)
from .events import EventName, EventPublisher
from .followup import FollowUpContextManager
from .llm.base import AnswerGenerationError
from .llm.generator import AnswerGenerator
from .recorder import RecordingManager
from .session_store import SessionStore

logger = logging.getLogger(__name__)

APOLOGIES = {
    "en": "Sorry, I didn't catch that. Please try again.",
    "vi": "Xin lỗi, tôi không nghe rõ. Vui lòng thử lại.",
}
ERROR_PREFIXES = {"en": "Error: ", "vi": "Lỗi: "}
DIRECT_TRANSCRIPT_PLACEHOLDER = "Audio processed directly with Gemini"


def empty_transcript_result(language_code: str, audio_file: Optional[str]) -> dict[str, Any]:
    lang = "vi" if language_code.startswith("vi") else "en"
    return {"transcript": "", "answer": APOLOGIES[lang], "audioFile": audio_file}


def processing_error_result(message: str, lang: str, audio_file: Optional[str]) -> dict[str, Any]:
    message = message or "An error occurred during processing"
    prefix = ERROR_PREFIXES["vi" if lang == "vi" else "en"]
    return {"error": message, "transcript": "", "answer": f"{prefix}{message}", "audioFile": audio_file}


class _StreamFailed(Exception):
    """Streaming broke after `streamError` went out; nothing more to publish."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class VoicePipeline:
    def __init__(
        self,
        store: SessionStore,
        publisher: EventPublisher,
        recorder: RecordingManager,
        transcriber: TranscriptionOrchestrator,
        answers: AnswerGenerator,
        *,
        audio_dir: Path,
        cancel_rearm_sec: float = 1.0,
        file_settle_sec: float = 2.0,
        default_duration_sec: int = 30,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.recorder = recorder
        self.transcriber = transcriber
        self.answers = answers
        self.audio_dir = audio_dir
        self.cancellation = CancellationController(store, publisher, rearm_delay_sec=cancel_rearm_sec)
        self.followup = FollowUpContextManager(store)
        self._file_settle_sec = float(file_settle_sec)
        self._default_duration_sec = int(default_duration_sec)

    async def _emit(self, token: CancellationToken, event: EventName, payload: Any = None) -> bool:
        if token.cancelled:
            logger.info("Suppressed %s for cancelled operation #%d", event, token.operation_id)
            return False
        await self.publisher.emit(event, payload)
        return True

    async def _reject(self, exc: PipelineError) -> PipelineError:
        await self.publisher.emit("error", {"message": exc.message})
        return exc

    # -- recording ---------------------------------------------------------

    async def start_recording(
        self, *, duration: Optional[int] = None, speech_speed: str = "normal"
    ) -> Path:
        seconds = int(duration) if duration else self._default_duration_sec
        logger.info("Start recording request (duration=%ss speed=%s)", seconds, speech_speed)
        return await self.recorder.start(duration=seconds, speech_speed=speech_speed)

    async def stop_and_process(self, params: RequestParams) -> OperationOutcome:
        logger.info(
            "Stop recording request. Language: %s, Context: %s, Custom Context: %s, "
            "IsFollowUp: %s, Streaming: %s",
            params.lang,
            params.question_context,
            "provided" if params.custom_context else "none",
            params.is_follow_up,
            params.use_streaming,
        )
        if params.audio_file:
            logger.info("Processing specified audio file: %s", params.audio_file)
            return await self.process_file(Path(params.audio_file), params, operation="stop")
        # The token exists before the grace window so a cancel sent meanwhile is not lost.
        token = self.cancellation.begin("stop")
        try:
            audio_file = await self.recorder.stop()
        except NotRecording as exc:
            self.cancellation.finish(token)
            raise await self._reject(exc)
        except BaseException:
            self.cancellation.finish(token)
            raise
        return await self.process_file(audio_file, params, operation="stop", token=token)

    async def process_upload(self, audio_file: Path, params: RequestParams) -> OperationOutcome:
        logger.info("Processing uploaded file: %s", audio_file)
        return await self.process_file(audio_file, params, operation="upload")

    # -- operations --------------------------------------------------------

    async def _run(
        self,
        operation: str,
        params: RequestParams,
        audio_file: Optional[str],
        body,
        token: Optional[CancellationToken] = None,
    ) -> OperationOutcome:
        if token is None:
            token = self.cancellation.begin(operation)
        try:
            token.raise_if_cancelled()
            await body(token)
        except CancelledMidOperation:
            logger.info("Operation %s cancelled", operation)
            return OperationOutcome(status="cancelled", message="Processing cancelled", audio_file=audio_file)
        except _StreamFailed as exc:
            return OperationOutcome(status="failed", message=exc.message, audio_file=audio_file)
        except (PipelineError, TranscriptionError, AnswerGenerationError) as exc:
            message = str(getattr(exc, "message", "") or exc)
            logger.error("Processing error during %s: %s", operation, message)
            await self._emit(token, "error", {"message": message})
            await self._emit(token, "update", processing_error_result(message, params.lang, audio_file))
            return OperationOutcome(status="failed", message=message, audio_file=audio_file)
        finally:
            self.cancellation.finish(token)
        if token.cancelled:
            return OperationOutcome(status="cancelled", message="Processing cancelled", audio_file=audio_file)
        return OperationOutcome(status="completed", audio_file=audio_file)

    def _transcription_options(self, params: RequestParams) -> TranscriptionOptions:
        return TranscriptionOptions(
            question_context=params.question_context,
            custom_context=params.custom_context,
            is_follow_up=params.is_follow_up,
            speech_speed=params.speech_speed,
        )

    async def process_file(
        self,
        audio_file: Path,
        params: RequestParams,
        *,
        operation: str = "process",
        token: Optional[CancellationToken] = None,
    ) -> OperationOutcome:
        async def body(token: CancellationToken) -> None:
            await self._emit(token, "processing")
            validated = await validate_audio_file(audio_file, settle_delay_sec=self._file_settle_sec)
            token.raise_if_cancelled()
            path = str(validated)
            # A new file starts a fresh retry ladder.
            self.store.set_last_processed_file(path)
            self.store.set_retry_count(0)
            try:
                result = await self.transcriber.transcribe(
                    path, params.language_code, self._transcription_options(params), token
                )
            except TranscriptionError as exc:
                logger.error("Transcription error during processing: %s", exc.message)
                result = TranscriptionResult(transcript="", audio_file=path)
            await self.handle_transcription_result(result.transcript, params, path, token)

        return await self._run(operation, params, str(audio_file), body, token)

    async def retry(self, params: RequestParams) -> OperationOutcome:
        audio_file = params.audio_file or self.store.last_processed_file
        logger.info(
            "Retry request received. Processing file: %s, Retry count: %d, IsFollowUp: %s",
            audio_file,
            self.store.retry_count,
            params.is_follow_up,
        )
        if not audio_file or not Path(audio_file).exists():
            raise await self._reject(NoAudioAvailable("No audio file available for retry"))

        async def body(token: CancellationToken) -> None:
            await self._emit(token, "processing")
            self.store.set_last_processed_file(audio_file)
            result = await self.transcriber.retry(
                audio_file, params.language_code, self._transcription_options(params), token
            )
            await self.handle_transcription_result(result.transcript, params, audio_file, token)

        return await self._run("retry", params, audio_file, body)

    async def process_directly(self, params: RequestParams) -> OperationOutcome:
        audio_file = params.audio_file or self.store.last_processed_file
        logger.info(
            "Direct audio request received. Processing file: %s, IsFollowUp: %s",
            audio_file,
            params.is_follow_up,
        )
        if not audio_file or not Path(audio_file).exists():
            raise await self._reject(NoAudioAvailable("No audio file available for Gemini processing"))

        async def body(token: CancellationToken) -> None:
            self.store.set_retry_count(0)
            await self._emit(token, "processing")
            direct = await self.answers.process_audio_directly(
                audio_file,
                params.lang,
                params.question_context,
                params.custom_context,
                token,
                model=params.model,
            )
            transcript = direct.transcript or DIRECT_TRANSCRIPT_PLACEHOLDER
            previous = self._previous_question(token, params, transcript)

            if params.use_streaming:
                await self._emit(token, "transcript", {"transcript": transcript, "processedDirectly": True})
                await self.stream_answer(
                    transcript,
                    params,
                    audio_file,
                    token,
                    previous_question=previous,
                    processed_directly=True,
                )
                return
            result = AnswerResult(
                transcript=transcript,
                answer=direct.answer,
                audio_file=audio_file,
                is_follow_up=params.is_follow_up,
                processed_directly=True,
            )
            await self._emit(token, "update", result.to_wire())

        return await self._run("direct", params, audio_file, body)

    async def stream_transcript(self, transcript: str, params: RequestParams) -> OperationOutcome:
        if not transcript or not transcript.strip():
            raise await self._reject(MissingTranscript())
        audio_file = params.audio_file or self.store.last_processed_file

        async def body(token: CancellationToken) -> None:
            previous = self.store.last_question if params.is_follow_up else None
            if params.is_follow_up and previous is None:
                logger.warning(
                    "Operation #%d (stream) asked a follow-up with no previous question; answering it standalone",
                    token.operation_id,
                )
            await self.stream_answer(transcript, params, audio_file, token, previous_question=previous)

        return await self._run("stream", params, audio_file, body)

    # -- answer stage ------------------------------------------------------

    async def handle_transcription_result(
        self,
        transcript: str,
        params: RequestParams,
        audio_file: Optional[str],
        token: CancellationToken,
    ) -> None:
        token.raise_if_cancelled()
        if not transcript or not transcript.strip():
            logger.info("Empty transcript; replying with apology")
            await self._emit(token, "update", empty_transcript_result(params.language_code, audio_file))
            return

        if params.use_streaming:
            await self._emit(token, "transcript", {"transcript": transcript})
            previous = self._previous_question(token, params, transcript)
            await self.stream_answer(
                transcript, params, audio_file, token, previous_question=previous
            )
            return

        previous = self._previous_question(token, params, transcript)
        answer = await self.answers.answer(self._answer_request(transcript, params, previous), token)
        result = AnswerResult(
            transcript=transcript,
            answer=answer,
            audio_file=audio_file,
            is_follow_up=params.is_follow_up,
        )
        await self._emit(token, "update", result.to_wire())

    def _answer_request(
        self, transcript: str, params: RequestParams, previous_question: Optional[str]
    ) -> AnswerRequest:
        return AnswerRequest(
            transcript=transcript,
            lang=params.lang,
            question_context=params.question_context,
            previous_question=previous_question,
            custom_context=params.custom_context,
            model=params.model,
        )

    def _previous_question(
        self, token: CancellationToken, params: RequestParams, transcript: str
    ) -> Optional[str]:
        context = self.followup.resolve(params.is_follow_up, transcript)
        if context.context_missing:
            logger.warning(
                "Operation #%d (%s) asked a follow-up with no previous question; answering it standalone",
                token.operation_id,
                token.operation,
            )
        return context.previous_question

    async def stream_answer(
        self,
        transcript: str,
        params: RequestParams,
        audio_file: Optional[str],
        token: CancellationToken,
        *,
        previous_question: Optional[str] = None,
        processed_directly: bool = False,
    ) -> str:
        request = self._answer_request(transcript, params, previous_question)
        pieces: list[str] = []
        try:
            async with aclosing(self.answers.answer_stream(request, token)) as stream:
                async for chunk in stream:
                    pieces.append(chunk)
                    await self._emit(
                        token,
                        "streamChunk",
                        {
                            "chunk": chunk,
                            "transcript": transcript,
                            "audioFile": audio_file,
                            "processedDirectly": processed_directly,
                        },
                    )
        except AnswerGenerationError as exc:
            logger.error("Error streaming response: %s", exc.message)
            await self._emit(token, "streamError", {"error": exc.message})
            raise _StreamFailed(exc.message) from exc

        full_answer = "".join(pieces)
        token.raise_if_cancelled()
        await self._emit(
            token,
            "streamEnd",
            {
                "fullAnswer": full_answer,
                "transcript": transcript,
                "audioFile": audio_file,
                "isFollowUp": params.is_follow_up,
                "processedDirectly": processed_directly,
            },
        )
        return full_answer

    # -- session -----------------------------------------------------------

    async def cancel(self) -> int:
        return await self.cancellation.cancel()

    def status(self) -> SessionSnapshot:
        return self.store.snapshot()

    def clear_audio_files(self) -> int:
        if self.store.recording:
            raise AlreadyRecording("Cannot clear audio files while recording")
        removed = purge_audio_dir(self.audio_dir)
        self.store.set_last_processed_file(None)
        self.store.set_last_question(None)
        return removed

    async def shutdown(self) -> None:
        await self.recorder.shutdown()
