from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _project_root() -> Path:
    # voiceqa/internal_core/config.py -> voiceqa -> project
    return Path(__file__).resolve().parents[2]


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_opt_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _default_capture_platform() -> str:
    if sys.platform.startswith("win"):
        return "win32"
    if sys.platform == "darwin":
        return "darwin"
    return "linux"


@dataclass(frozen=True)
class AppConfig:
    VOICEQA_AUDIO_DIR: str
    VOICEQA_CAPTURE_BIN: str
    VOICEQA_CAPTURE_PLATFORM: str
    VOICEQA_CAPTURE_DEFAULT_DURATION_SEC: int
    VOICEQA_STOP_GRACE_SEC: float
    VOICEQA_FILE_SETTLE_SEC: float
    VOICEQA_CANCEL_REARM_SEC: float
    VOICEQA_MAX_UPLOAD_BYTES: int
    VOICEQA_ASR_PROVIDER: str
    VOICEQA_ASR_TIMEOUT_SEC: int
    VOICEQA_GOOGLE_CREDENTIALS_PATH: str
    VOICEQA_WHISPER_CPP_BIN: str
    VOICEQA_WHISPER_CPP_MODEL: str
    VOICEQA_WHISPER_CPP_NO_GPU: bool
    VOICEQA_MOCK_TRANSCRIPT: str
    VOICEQA_LLM_BACKEND: str
    VOICEQA_GEMINI_API_KEY: str
    VOICEQA_GEMINI_MODEL: str
    VOICEQA_LLAMA_CPP_MODEL: str
    VOICEQA_LLAMA_CPP_N_CTX: int
    VOICEQA_LLAMA_CPP_N_GPU_LAYERS: int
    VOICEQA_LLAMA_CPP_N_THREADS: Optional[int]
    VOICEQA_LLAMA_CPP_CHAT_FORMAT: str
    VOICEQA_LLM_MAX_TOKENS: int
    VOICEQA_STREAM_CHANNEL_SIZE: int
    VOICEQA_LOG_LEVEL: str

    def audio_dir_path(self, repo_root: Optional[Path] = None) -> Path:
        base = repo_root if repo_root is not None else _project_root()
        return (base / self.VOICEQA_AUDIO_DIR).resolve()


def load_config() -> AppConfig:
    return AppConfig(
        VOICEQA_AUDIO_DIR=_getenv_str("VOICEQA_AUDIO_DIR", "audio"),
        VOICEQA_CAPTURE_BIN=_getenv_str("VOICEQA_CAPTURE_BIN", "ffmpeg"),
        VOICEQA_CAPTURE_PLATFORM=_getenv_str(
            "VOICEQA_CAPTURE_PLATFORM", _default_capture_platform()
        ),
        VOICEQA_CAPTURE_DEFAULT_DURATION_SEC=_getenv_int(
            "VOICEQA_CAPTURE_DEFAULT_DURATION_SEC", 30
        ),
        VOICEQA_STOP_GRACE_SEC=_getenv_float("VOICEQA_STOP_GRACE_SEC", 1.0),
        VOICEQA_FILE_SETTLE_SEC=_getenv_float("VOICEQA_FILE_SETTLE_SEC", 2.0),
        VOICEQA_CANCEL_REARM_SEC=_getenv_float("VOICEQA_CANCEL_REARM_SEC", 1.0),
        VOICEQA_MAX_UPLOAD_BYTES=_getenv_int("VOICEQA_MAX_UPLOAD_BYTES", 10 * 1024 * 1024),
        VOICEQA_ASR_PROVIDER=_getenv_str("VOICEQA_ASR_PROVIDER", "google"),
        VOICEQA_ASR_TIMEOUT_SEC=_getenv_int("VOICEQA_ASR_TIMEOUT_SEC", 60),
        VOICEQA_GOOGLE_CREDENTIALS_PATH=_getenv_str(
            "VOICEQA_GOOGLE_CREDENTIALS_PATH",
            _getenv_str("GOOGLE_APPLICATION_CREDENTIALS", ""),
        ),
        VOICEQA_WHISPER_CPP_BIN=_getenv_str("VOICEQA_WHISPER_CPP_BIN", "whisper-cli"),
        VOICEQA_WHISPER_CPP_MODEL=_getenv_str("VOICEQA_WHISPER_CPP_MODEL", ""),
        VOICEQA_WHISPER_CPP_NO_GPU=_getenv_bool("VOICEQA_WHISPER_CPP_NO_GPU", False),
        VOICEQA_MOCK_TRANSCRIPT=_getenv_str(
            "VOICEQA_MOCK_TRANSCRIPT", "(mock) what is the virtual DOM?"
        ),
        VOICEQA_LLM_BACKEND=_getenv_str("VOICEQA_LLM_BACKEND", "gemini"),
        VOICEQA_GEMINI_API_KEY=_getenv_str(
            "VOICEQA_GEMINI_API_KEY", _getenv_str("GEMINI_API_KEY", "")
        ),
        VOICEQA_GEMINI_MODEL=_getenv_str("VOICEQA_GEMINI_MODEL", "gemini-2.5-flash"),
        VOICEQA_LLAMA_CPP_MODEL=_getenv_str("VOICEQA_LLAMA_CPP_MODEL", ""),
        VOICEQA_LLAMA_CPP_N_CTX=_getenv_int("VOICEQA_LLAMA_CPP_N_CTX", 4096),
        VOICEQA_LLAMA_CPP_N_GPU_LAYERS=_getenv_int("VOICEQA_LLAMA_CPP_N_GPU_LAYERS", -1),
        VOICEQA_LLAMA_CPP_N_THREADS=_getenv_opt_int("VOICEQA_LLAMA_CPP_N_THREADS"),
        VOICEQA_LLAMA_CPP_CHAT_FORMAT=_getenv_str("VOICEQA_LLAMA_CPP_CHAT_FORMAT", ""),
        VOICEQA_LLM_MAX_TOKENS=_getenv_int("VOICEQA_LLM_MAX_TOKENS", 1024),
        VOICEQA_STREAM_CHANNEL_SIZE=_getenv_int("VOICEQA_STREAM_CHANNEL_SIZE", 32),
        VOICEQA_LOG_LEVEL=_getenv_str("VOICEQA_LOG_LEVEL", "INFO"),
    )
