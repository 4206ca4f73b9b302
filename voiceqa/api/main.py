from __future__ import annotations

"""
API surface for the voiceqa service.

Design intent:
- Keep handlers thin: normalize the request, call the pipeline, map the outcome.
- Build pipeline components lazily on `app.state` so tests can swap them.
- Push progress to clients over `/ws/events`; HTTP responses carry only a status.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Mapping

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from starlette.datastructures import UploadFile

from voiceqa.internal_core.asr import (
    GoogleSpeechProvider,
    MockSpeechProvider,
    SpeechProvider,
    TranscriptionOrchestrator,
    WhisperCppProvider,
)
from voiceqa.internal_core.audio_files import allocate_output_path, upload_suffix
from voiceqa.internal_core.config import AppConfig, load_config
from voiceqa.internal_core.contracts import OperationOutcome, RequestParams
from voiceqa.internal_core.errors import (
    AlreadyRecording,
    DeviceError,
    MissingTranscript,
    NoAudioAvailable,
    NotRecording,
    PipelineError,
)
from voiceqa.internal_core.events import WebSocketHub
from voiceqa.internal_core.llm import (
    AnswerGenerationError,
    AnswerGenerator,
    AnswerProvider,
    GeminiAnswerProvider,
    LlamaCppAnswerProvider,
    MockAnswerProvider,
)
from voiceqa.internal_core.pipeline import VoicePipeline
from voiceqa.internal_core.recorder import RecordingManager
from voiceqa.internal_core.session_store import SessionStore

RECORDING_PREFIX = "/api/v1/recording"

logger = logging.getLogger(__name__)

_CLIENT_ERRORS = (AlreadyRecording, NotRecording, NoAudioAvailable, MissingTranscript)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.shutdown()


app = FastAPI(title="voiceqa service", lifespan=_lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_speech_provider(cfg: AppConfig) -> SpeechProvider:
    name = cfg.VOICEQA_ASR_PROVIDER.strip().lower()
    if name == "mock":
        return MockSpeechProvider(cfg.VOICEQA_MOCK_TRANSCRIPT)
    if name == "whisper_cpp":
        return WhisperCppProvider(
            cfg.VOICEQA_WHISPER_CPP_BIN,
            cfg.VOICEQA_WHISPER_CPP_MODEL,
            no_gpu=cfg.VOICEQA_WHISPER_CPP_NO_GPU,
            timeout_sec=cfg.VOICEQA_ASR_TIMEOUT_SEC,
        )
    if name == "google":
        return GoogleSpeechProvider(
            cfg.VOICEQA_GOOGLE_CREDENTIALS_PATH, timeout_sec=cfg.VOICEQA_ASR_TIMEOUT_SEC
        )
    raise ValueError(f"Unknown VOICEQA_ASR_PROVIDER: {cfg.VOICEQA_ASR_PROVIDER}")


def build_answer_provider(cfg: AppConfig) -> AnswerProvider:
    name = cfg.VOICEQA_LLM_BACKEND.strip().lower()
    if name == "mock":
        return MockAnswerProvider()
    if name == "llama_cpp":
        return LlamaCppAnswerProvider(
            cfg.VOICEQA_LLAMA_CPP_MODEL,
            n_ctx=cfg.VOICEQA_LLAMA_CPP_N_CTX,
            n_gpu_layers=cfg.VOICEQA_LLAMA_CPP_N_GPU_LAYERS,
            n_threads=cfg.VOICEQA_LLAMA_CPP_N_THREADS,
            chat_format=cfg.VOICEQA_LLAMA_CPP_CHAT_FORMAT,
            max_tokens=cfg.VOICEQA_LLM_MAX_TOKENS,
        )
    if name == "gemini":
        return GeminiAnswerProvider(
            cfg.VOICEQA_GEMINI_API_KEY,
            model_name=cfg.VOICEQA_GEMINI_MODEL,
            max_tokens=cfg.VOICEQA_LLM_MAX_TOKENS,
        )
    raise ValueError(f"Unknown VOICEQA_LLM_BACKEND: {cfg.VOICEQA_LLM_BACKEND}")


def build_pipeline(
    cfg: AppConfig,
    publisher: WebSocketHub,
    *,
    speech_provider: SpeechProvider | None = None,
    answer_provider: AnswerProvider | None = None,
) -> VoicePipeline:
    store = SessionStore()
    audio_dir = cfg.audio_dir_path()
    recorder = RecordingManager(
        store,
        publisher,
        audio_dir=audio_dir,
        capture_bin=cfg.VOICEQA_CAPTURE_BIN,
        platform=cfg.VOICEQA_CAPTURE_PLATFORM,
        stop_grace_sec=cfg.VOICEQA_STOP_GRACE_SEC,
    )
    transcriber = TranscriptionOrchestrator(speech_provider or build_speech_provider(cfg), store)
    answers = AnswerGenerator(
        answer_provider or build_answer_provider(cfg),
        channel_size=cfg.VOICEQA_STREAM_CHANNEL_SIZE,
    )
    return VoicePipeline(
        store,
        publisher,
        recorder,
        transcriber,
        answers,
        audio_dir=audio_dir,
        cancel_rearm_sec=cfg.VOICEQA_CANCEL_REARM_SEC,
        file_settle_sec=cfg.VOICEQA_FILE_SETTLE_SEC,
        default_duration_sec=cfg.VOICEQA_CAPTURE_DEFAULT_DURATION_SEC,
    )


def _get_config() -> AppConfig:
    existing = getattr(app.state, "config", None)
    if isinstance(existing, AppConfig):
        return existing
    created = load_config()
    setattr(app.state, "config", created)
    return created


def _get_event_hub() -> WebSocketHub:
    existing = getattr(app.state, "event_hub", None)
    if isinstance(existing, WebSocketHub):
        return existing
    created = WebSocketHub()
    setattr(app.state, "event_hub", created)
    return created


def _get_pipeline() -> VoicePipeline:
    existing = getattr(app.state, "pipeline", None)
    if existing is not None:
        return existing
    try:
        created = build_pipeline(_get_config(), _get_event_hub())
    except (AnswerGenerationError, ValueError) as exc:
        logger.error("Pipeline setup failed: %s", exc)
        raise HTTPException(status_code=500, detail=f"Service is not configured: {exc}") from exc
    setattr(app.state, "pipeline", created)
    return created


async def _read_payload(request: Request) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON body.") from exc
        if body is None:
            return {}
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="JSON body must be an object.")
        return body
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    return {}


async def _save_upload(request: Request) -> tuple[Path, dict[str, Any]]:
    form = await request.form()
    fields = {key: value for key, value in form.items() if isinstance(value, str)}
    upload = form.get("audio")
    if not isinstance(upload, UploadFile):
        raise HTTPException(status_code=400, detail="No audio file provided.")

    suffix = upload_suffix(upload.filename or "", upload.content_type)
    if suffix is None:
        raise HTTPException(status_code=400, detail="Only audio files are allowed.")

    payload = await upload.read()
    if not payload:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    max_bytes = _get_config().VOICEQA_MAX_UPLOAD_BYTES
    if len(payload) > max_bytes:
        raise HTTPException(
            status_code=413, detail=f"Uploaded file exceeds {max_bytes // (1024 * 1024)}MB limit."
        )

    output_path = allocate_output_path(_get_pipeline().audio_dir, suffix)
    output_path.write_bytes(payload)
    logger.info("Saved upload %s (%d bytes) to %s", upload.filename, len(payload), output_path)
    return output_path, fields


def _pipeline_http_error(exc: PipelineError) -> HTTPException:
    status = 400 if isinstance(exc, _CLIENT_ERRORS) else 500
    return HTTPException(status_code=status, detail=exc.message)


def _respond(outcome: OperationOutcome, success_text: str) -> PlainTextResponse:
    if outcome.status == "cancelled":
        return PlainTextResponse("Processing cancelled")
    if outcome.status == "failed":
        raise HTTPException(status_code=500, detail=f"Error processing audio: {outcome.message}")
    return PlainTextResponse(success_text)


def _with_audio_file(fields: Mapping[str, Any], audio_file: Path) -> dict[str, Any]:
    merged = dict(fields)
    merged["audioFile"] = str(audio_file)
    return merged


@app.get("/")
async def root() -> dict[str, str]:
    return {"service": "voiceqa", "status": "ok"}


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post(f"{RECORDING_PREFIX}/start", response_class=PlainTextResponse)
async def start_recording(request: Request) -> PlainTextResponse:
    payload = await _read_payload(request)
    raw_duration = payload.get("duration")
    duration = None
    if raw_duration not in (None, ""):
        try:
            duration = int(raw_duration)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="duration must be an integer.") from exc
        if duration <= 0:
            raise HTTPException(status_code=400, detail="duration must be positive.")
    speech_speed = str(payload.get("speechSpeed") or payload.get("speech_speed") or "normal")

    try:
        await _get_pipeline().start_recording(duration=duration, speech_speed=speech_speed)
    except DeviceError as exc:
        raise HTTPException(status_code=500, detail=exc.message) from exc
    except PipelineError as exc:
        raise _pipeline_http_error(exc) from exc
    return PlainTextResponse("Recording started")


@app.post(f"{RECORDING_PREFIX}/stop", response_class=PlainTextResponse)
async def stop_recording(request: Request) -> PlainTextResponse:
    params = RequestParams.from_payload(await _read_payload(request))
    try:
        outcome = await _get_pipeline().stop_and_process(params)
    except PipelineError as exc:
        raise _pipeline_http_error(exc) from exc
    return _respond(outcome, "Audio processed successfully")


@app.post(f"{RECORDING_PREFIX}/upload", response_class=PlainTextResponse)
async def upload_audio(request: Request) -> PlainTextResponse:
    audio_file, fields = await _save_upload(request)
    params = RequestParams.from_payload(fields)
    outcome = await _get_pipeline().process_upload(audio_file, params)
    return _respond(outcome, "Audio processed successfully")


@app.post(f"{RECORDING_PREFIX}/retry", response_class=PlainTextResponse)
async def retry_transcription(request: Request) -> PlainTextResponse:
    params = RequestParams.from_payload(await _read_payload(request))
    try:
        outcome = await _get_pipeline().retry(params)
    except PipelineError as exc:
        raise _pipeline_http_error(exc) from exc
    return _respond(outcome, "Retry completed")


@app.post(f"{RECORDING_PREFIX}/retry-upload", response_class=PlainTextResponse)
async def retry_upload(request: Request) -> PlainTextResponse:
    audio_file, fields = await _save_upload(request)
    params = RequestParams.from_payload(_with_audio_file(fields, audio_file))
    try:
        outcome = await _get_pipeline().retry(params)
    except PipelineError as exc:
        raise _pipeline_http_error(exc) from exc
    return _respond(outcome, "Retry completed")


@app.post(f"{RECORDING_PREFIX}/gemini", response_class=PlainTextResponse)
async def process_with_gemini(request: Request) -> PlainTextResponse:
    params = RequestParams.from_payload(await _read_payload(request))
    try:
        outcome = await _get_pipeline().process_directly(params)
    except PipelineError as exc:
        raise _pipeline_http_error(exc) from exc
    return _respond(outcome, "Gemini processing completed")


@app.post(f"{RECORDING_PREFIX}/gemini-upload", response_class=PlainTextResponse)
async def gemini_upload(request: Request) -> PlainTextResponse:
    audio_file, fields = await _save_upload(request)
    params = RequestParams.from_payload(_with_audio_file(fields, audio_file))
    try:
        outcome = await _get_pipeline().process_directly(params)
    except PipelineError as exc:
        raise _pipeline_http_error(exc) from exc
    return _respond(outcome, "Gemini processing completed")


@app.post(f"{RECORDING_PREFIX}/stream", response_class=PlainTextResponse)
async def stream_response(request: Request) -> PlainTextResponse:
    payload = await _read_payload(request)
    params = RequestParams.from_payload(payload)
    transcript = str(payload.get("transcript") or "")
    try:
        outcome = await _get_pipeline().stream_transcript(transcript, params)
    except PipelineError as exc:
        raise _pipeline_http_error(exc) from exc
    if outcome.status == "failed":
        raise HTTPException(status_code=500, detail=f"Error streaming response: {outcome.message}")
    return _respond(outcome, "Streaming completed")


@app.post(f"{RECORDING_PREFIX}/cancel")
async def cancel_processing() -> dict[str, Any]:
    cancelled = await _get_pipeline().cancel()
    logger.info("Cancel request handled (in-flight operations=%d)", cancelled)
    return {"success": True, "message": "Processing cancelled successfully"}


@app.get(f"{RECORDING_PREFIX}/status")
async def recording_status() -> dict[str, Any]:
    return _get_pipeline().status().to_wire()


@app.post(f"{RECORDING_PREFIX}/clear-audio-files")
async def clear_audio_files() -> dict[str, Any]:
    try:
        removed = _get_pipeline().clear_audio_files()
    except PipelineError as exc:
        raise _pipeline_http_error(exc) from exc
    return {"success": True, "message": f"Deleted {removed} audio file(s)", "removed": removed}


@app.get("/api/v1/models")
async def list_models() -> dict[str, Any]:
    provider = _get_pipeline().answers.provider
    try:
        models = await asyncio.to_thread(provider.list_models)
    except AnswerGenerationError as exc:
        logger.error("Error fetching models: %s", exc.message)
        raise HTTPException(status_code=500, detail=f"Failed to fetch models: {exc.message}") from exc
    return {"models": models}


@app.websocket("/ws/events")
async def events_ws(websocket: WebSocket) -> None:
    await websocket.accept()
    hub = _get_event_hub()
    hub.register(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"event": "error", "data": {"message": "invalid_json"}})
                continue
            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "cancel":
                await _get_pipeline().cancel()
                continue
            if kind == "ping":
                await websocket.send_json({"event": "pong", "data": None})
                continue
            await websocket.send_json({"event": "error", "data": {"message": "unknown_message_type"}})
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister(websocket)
