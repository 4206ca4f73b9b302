from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
import time
import uuid
import wave
from pathlib import Path
from typing import Optional, Tuple, Union

from .errors import AudioFileDisappeared, AudioFileNotFound, EmptyAudioFile

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

ALLOWED_UPLOAD_EXTS = {".wav", ".webm", ".ogg", ".mp3", ".m4a", ".mp4", ".aac"}
_VIDEO_AUDIO_MIME_TYPES = {"video/mp4", "video/quicktime"}
_MIME_SUFFIXES = {
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/wave": ".wav",
    "audio/webm": ".webm",
    "audio/ogg": ".ogg",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/aac": ".aac",
    "video/mp4": ".mp4",
    "video/quicktime": ".mp4",
}


def _which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def safe_unlink(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.error("Error deleting file %s: %s", path, exc)


def ensure_audio_dir(audio_dir: Path) -> Path:
    audio_dir.mkdir(parents=True, exist_ok=True)
    return audio_dir


def allocate_output_path(audio_dir: Path, suffix: str = ".wav") -> Path:
    """Timestamp-named file under the audio directory; never reuses an existing name."""
    ensure_audio_dir(audio_dir)
    suffix = suffix if suffix.startswith(".") else f".{suffix}"
    stamp = int(time.time() * 1000)
    candidate = audio_dir / f"{stamp}{suffix}"
    while candidate.exists():
        stamp += 1
        candidate = audio_dir / f"{stamp}{suffix}"
    return candidate


def purge_audio_dir(audio_dir: Path) -> int:
    if not audio_dir.exists():
        return 0
    removed = 0
    for path in audio_dir.iterdir():
        if not path.is_file():
            continue
        try:
            path.unlink()
            removed += 1
        except OSError as exc:
            logger.error("Failed to delete file %s: %s", path.name, exc)
    logger.info("Temporary audio files cleaned up (%d removed)", removed)
    return removed


def delete_if_empty(path: Optional[PathLike]) -> bool:
    if not path:
        return False
    candidate = Path(path)
    try:
        if candidate.exists() and candidate.stat().st_size == 0:
            candidate.unlink()
            logger.info("Deleted empty audio file: %s", candidate)
            return True
    except OSError as exc:
        logger.error("Error deleting empty file %s: %s", candidate, exc)
    return False


def upload_suffix(filename: str, content_type: Optional[str]) -> Optional[str]:
    """Extension to store an upload under, or None when the upload is not audio."""
    suffix = Path(filename or "").suffix.lower()
    mime = (content_type or "").split(";")[0].strip().lower()

    if mime.startswith("audio/") or mime in _VIDEO_AUDIO_MIME_TYPES:
        if suffix in ALLOWED_UPLOAD_EXTS:
            return suffix
        return _MIME_SUFFIXES.get(mime, ".webm")
    if mime in {"", "application/octet-stream"} and suffix in ALLOWED_UPLOAD_EXTS:
        return suffix
    return None


async def validate_audio_file(path: Optional[PathLike], *, settle_delay_sec: float = 2.0) -> Path:
    """
    Confirm an audio file exists and has content.

    An empty file gets one more look after `settle_delay_sec`, because the
    capture process may still be flushing its last buffer.
    """
    if not path:
        raise AudioFileNotFound("No recording file was created")

    candidate = Path(path)
    logger.info("Checking if file exists: %s", candidate)
    if not candidate.exists():
        raise AudioFileNotFound("Recording file not found")

    size = candidate.stat().st_size
    logger.info("Initial file size check: %d bytes", size)
    if size > 0:
        return candidate

    logger.info("File is empty, waiting to see if more data arrives...")
    await asyncio.sleep(settle_delay_sec)
    if not candidate.exists():
        raise AudioFileDisappeared("Recording file disappeared during processing")
    size = candidate.stat().st_size
    logger.info("After waiting, file size is now: %d bytes", size)
    if size == 0:
        raise EmptyAudioFile("Recording file is empty. No audio was captured.")
    return candidate


def load_wav_info(path: Path) -> Tuple[float, int, int]:
    with wave.open(str(path), "rb") as wf:
        frames = wf.getnframes()
        rate = wf.getframerate()
        channels = wf.getnchannels()
        duration = frames / float(rate) if rate else 0.0
        return duration, rate, channels


def normalize_to_wav16k_mono(input_path: Path, tmp_dir: Path) -> Path:
    """
    Normalize any supported audio to 16kHz mono WAV.
    Prefers ffmpeg when present; falls back to `miniaudio` decode/convert.
    """
    if not input_path.exists():
        raise ValueError(f"Audio file not found: {input_path}")

    if input_path.suffix.lower() == ".wav":
        try:
            _, sr, ch = load_wav_info(input_path)
            if int(sr) == 16000 and int(ch) == 1:
                return input_path
        except (wave.Error, EOFError):
            pass

    tmp_dir.mkdir(parents=True, exist_ok=True)
    out_path = tmp_dir / f"{input_path.stem}_norm_{uuid.uuid4().hex[:8]}.wav"

    ffmpeg = _which("ffmpeg")
    if ffmpeg:
        cmd = [ffmpeg, "-y", "-i", str(input_path), "-ac", "1", "-ar", "16000", str(out_path)]
        try:
            subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
            return out_path
        except subprocess.CalledProcessError as e:
            stderr = (
                e.stderr.decode("utf-8", "ignore")
                if isinstance(e.stderr, (bytes, bytearray))
                else str(e.stderr)
            )
            raise ValueError(
                f"Audio conversion failed via ffmpeg: {stderr.strip() or 'unknown error'}"
            ) from e

    try:
        import miniaudio  # type: ignore
    except ImportError as exc:
        raise ValueError(
            "Audio conversion requires `ffmpeg` or the Python dependency `miniaudio`."
        ) from exc

    try:
        decoded = miniaudio.decode_file(
            str(input_path),
            output_format=miniaudio.SampleFormat.SIGNED16,
            nchannels=1,
            sample_rate=16000,
        )
        with wave.open(str(out_path), "wb") as wf:
            wf.setnchannels(1)
            wf.setsampwidth(2)
            wf.setframerate(16000)
            wf.writeframes(decoded.samples.tobytes())
        return out_path
    except Exception as e:
        raise ValueError(f"Audio conversion failed: {e}") from e
