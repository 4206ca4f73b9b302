from __future__ import annotations

from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Lang = Literal["en", "vi"]
SpeechSpeed = Literal["slow", "normal", "fast"]
RecorderState = Literal["idle", "starting", "recording", "stopping", "error"]
OperationStatus = Literal["completed", "cancelled", "failed"]

_TRUE_STRINGS = {"1", "true", "t", "yes", "y", "on"}


def _lookup(payload: Mapping[str, Any], camel: str, snake: str) -> Any:
    if camel in payload:
        return payload[camel]
    return payload.get(snake)


def _coerce_flag(value: Any) -> Optional[bool]:
    # Multipart bodies deliver booleans as strings.
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return str(value).strip().lower() in _TRUE_STRINGS


class _WireModel(BaseModel):
    model_config = ConfigDict(
        extra="forbid", alias_generator=to_camel, populate_by_name=True
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class RequestParams(_WireModel):
    model_config = ConfigDict(
        extra="forbid", alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    lang: Lang = "vi"
    language_code: str = "vi-VN"
    speech_speed: str = "normal"
    question_context: str = "general"
    custom_context: str = ""
    is_follow_up: bool = False
    use_streaming: bool = True
    audio_file: Optional[str] = None
    model: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> "RequestParams":
        payload = payload or {}
        is_en = str(payload.get("language") or "").strip() == "en"
        follow_up = _coerce_flag(_lookup(payload, "isFollowUp", "is_follow_up"))
        streaming = _coerce_flag(_lookup(payload, "useStreaming", "use_streaming"))
        audio_file = _lookup(payload, "audioFile", "audio_file")
        return cls(
            lang="en" if is_en else "vi",
            language_code="en-US" if is_en else "vi-VN",
            speech_speed=str(_lookup(payload, "speechSpeed", "speech_speed") or "normal"),
            question_context=str(
                _lookup(payload, "questionContext", "question_context") or "general"
            ),
            custom_context=str(_lookup(payload, "customContext", "custom_context") or ""),
            is_follow_up=follow_up is True,
            use_streaming=streaming is not False,
            audio_file=str(audio_file) if audio_file else None,
            model=str(payload.get("model") or "").strip() or None,
        )


class TranscriptionOptions(_WireModel):
    model_config = ConfigDict(
        extra="forbid", alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    question_context: str = "general"
    custom_context: str = ""
    is_follow_up: bool = False
    speech_speed: str = "normal"
    retry_attempt: bool = False
    attempt_number: int = 0
    use_simple_settings: bool = False
    speech_model: Optional[str] = None
    use_enhanced: Optional[bool] = None
    enable_automatic_punctuation: Optional[bool] = None
    strategy_name: Optional[str] = None


class TranscriptionResult(_WireModel):
    transcript: str = ""
    audio_file: str
    meta: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.transcript.strip()


class AnswerRequest(_WireModel):
    transcript: str
    lang: Lang = "en"
    question_context: str = "general"
    previous_question: Optional[str] = None
    custom_context: str = ""
    model: Optional[str] = None


class DirectAudioResult(_WireModel):
    transcript: str
    answer: str


class AnswerResult(_WireModel):
    transcript: str
    answer: str
    audio_file: Optional[str] = None
    is_follow_up: bool = False
    processed_directly: bool = False


class SessionSnapshot(_WireModel):
    is_recording: bool
    current_file: Optional[str] = None
    last_processed_file: Optional[str] = None
    has_last_question: bool = False
    last_question_preview: Optional[str] = None
    retry_count: int = 0
    cancelled: bool = False
    recorder_state: RecorderState = "idle"


class OperationOutcome(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: OperationStatus
    message: str = ""
    audio_file: Optional[str] = None
