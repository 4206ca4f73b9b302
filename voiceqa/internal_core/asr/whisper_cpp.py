from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional, Tuple

from ..audio_files import normalize_to_wav16k_mono
from ..contracts import TranscriptionOptions, TranscriptionResult
from .base import SpeechProvider, TranscriptionError

logger = logging.getLogger(__name__)

# Cloud model names map onto local decoding effort.
_DECODING_PROFILES: dict[str, Tuple[int, int]] = {
    "latest_short": (5, 5),
    "default": (5, 5),
    "latest_long": (8, 8),
    "video": (8, 8),
}


def whisper_cpp_available(bin_path: str, model_path: str) -> Tuple[bool, str]:
    if not bin_path:
        return False, "missing VOICEQA_WHISPER_CPP_BIN"
    if not model_path:
        return False, "missing VOICEQA_WHISPER_CPP_MODEL"
    if not Path(bin_path).exists() and shutil.which(bin_path) is None:
        return False, f"whisper-cli not found: {bin_path}"
    if not Path(model_path).exists():
        return False, f"model not found: {model_path}"
    return True, ""


def decoding_args(options: TranscriptionOptions) -> list[str]:
    if options.use_simple_settings:
        return ["-bs", "1", "-bo", "1"]
    beam, best_of = _DECODING_PROFILES.get(options.speech_model or "latest_short", (5, 5))
    return ["-bs", str(beam), "-bo", str(best_of)]


def _whisper_language(language_code: str) -> str:
    return (language_code or "en").split("-")[0].lower() or "en"


def _with_dyld_paths(bin_path: str) -> dict[str, str]:
    env_out = dict(os.environ)
    try:
        build_dir = Path(bin_path).resolve().parents[1]
    except (OSError, IndexError):
        return env_out
    candidates = [build_dir / "src", build_dir / "ggml" / "src"]
    new_paths = [str(p) for p in candidates if p.exists()]
    if not new_paths:
        return env_out
    existing = env_out.get("DYLD_LIBRARY_PATH", "")
    joined = os.pathsep.join(new_paths)
    env_out["DYLD_LIBRARY_PATH"] = joined if not existing else f"{joined}{os.pathsep}{existing}"
    return env_out


class WhisperCppProvider(SpeechProvider):
    def __init__(
        self,
        bin_path: str,
        model_path: str,
        no_gpu: bool = False,
        timeout_sec: int = 60,
        tmp_dir: Optional[Path] = None,
    ):
        self._bin_path = bin_path
        self._model_path = model_path
        self._runtime_no_gpu = bool(no_gpu)
        self._timeout_sec = int(timeout_sec)
        self._tmp_dir = tmp_dir

    def name(self) -> str:
        return "whisper_cpp"

    def transcribe(
        self, audio_path: str, language_code: str, options: TranscriptionOptions
    ) -> TranscriptionResult:
        ok, reason = whisper_cpp_available(self._bin_path, self._model_path)
        if not ok:
            raise TranscriptionError("WHISPER_UNAVAILABLE", reason, self.name())

        source = Path(audio_path)
        tmp_dir = self._tmp_dir or Path(tempfile.gettempdir()) / "voiceqa_whisper"
        try:
            wav_path = normalize_to_wav16k_mono(source, tmp_dir)
        except ValueError as exc:
            raise TranscriptionError("AUDIO_CONVERT_FAILED", str(exc), self.name()) from exc

        try:
            text = self._run(str(wav_path), _whisper_language(language_code), options)
        finally:
            if wav_path.resolve() != source.resolve():
                wav_path.unlink(missing_ok=True)

        return TranscriptionResult(
            transcript=text,
            audio_file=str(source),
            meta={
                "provider": self.name(),
                "model": options.speech_model,
                "no_gpu": self._runtime_no_gpu,
            },
        )

    def _run(self, wav_path: str, language: str, options: TranscriptionOptions) -> str:
        base_cmd = [
            self._bin_path,
            "-m", self._model_path,
            "-f", wav_path,
            "-l", language,
            "--no-timestamps",
            "--no-prints",
            *decoding_args(options),
        ]

        # Some GPU builds crash on certain machines; retry once on CPU.
        attempts = [True] if self._runtime_no_gpu else [False, True]
        attempt_errors: list[str] = []
        saw_timeout = False

        for use_no_gpu in attempts:
            cmd = list(base_cmd)
            mode = "cpu_no_gpu" if use_no_gpu else "gpu_default"
            if use_no_gpu:
                cmd.insert(1, "-ng")
            try:
                res = subprocess.run(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    timeout=self._timeout_sec,
                    env=_with_dyld_paths(self._bin_path),
                )
            except subprocess.TimeoutExpired:
                saw_timeout = True
                attempt_errors.append(f"{mode}: timeout")
                self._runtime_no_gpu = True
                continue
            except OSError as e:
                attempt_errors.append(f"{mode}: {e}")
                self._runtime_no_gpu = True
                continue

            if res.returncode != 0:
                msg = (res.stderr or "").strip() or f"exit_code={res.returncode}"
                if len(msg) > 200:
                    msg = msg[:200] + "..."
                attempt_errors.append(f"{mode}: {msg}")
                self._runtime_no_gpu = True
                continue

            # Silence is a valid (empty) transcript, not an error.
            return " ".join((res.stdout or "").split()).strip()

        logger.error("whisper.cpp failed: %s", "; ".join(attempt_errors))
        if saw_timeout:
            raise TranscriptionError(
                "WHISPER_TIMEOUT", "; ".join(attempt_errors) or "whisper.cpp timed out", self.name()
            )
        raise TranscriptionError(
            "WHISPER_EXIT_NONZERO", "; ".join(attempt_errors) or "non-zero exit", self.name()
        )
