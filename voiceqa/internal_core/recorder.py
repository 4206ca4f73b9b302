from __future__ import annotations

"""
Owns the external audio-capture process.

Design intent:
- Only this module spawns, signals, or kills the capture process and writes
  `current_output_file` in the session.
- Device failures reported on stderr end the recording and remove the
  partial file before the client hears about it.
- Stopping waits a grace window so the capture tool can flush its last buffer.
"""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Callable, Optional, Sequence

from .audio_files import allocate_output_path, delete_if_empty, purge_audio_dir, safe_unlink
from .contracts import RecorderState
from .errors import DEVICE_ERROR_MESSAGES, AlreadyRecording, DeviceError, DeviceErrorCategory, NotRecording
from .events import EventPublisher
from .session_store import SessionStore

logger = logging.getLogger(__name__)

CommandBuilder = Callable[[str, Path, int, str, str], Sequence[str]]

DEVICE_ERROR_PATTERNS = (
    "No such filter",
    "Invalid argument",
    "Could not find",
    "Device not found",
    "Cannot open",
    "Failed to read",
    "Error opening",
    "Input/output error",
    "does not exist",
    "Could not open",
    "not found",
    "No such device",
    "Permission denied",
    "Access denied",
)


def build_capture_args(
    output_file: Path, duration: int, speech_speed: str, platform: str
) -> list[str]:
    args = ["-y", "-hide_banner"]
    if platform == "win32":
        args += [
            "-loglevel", "info",
            "-f", "dshow",
            "-rtbufsize", "100M",
            "-i", "audio=virtual-audio-capturer",
            "-sample_rate", "16000",
            "-channels", "1",
        ]
    elif platform == "linux":
        args += ["-loglevel", "error", "-f", "pulse", "-i", "default"]
    elif platform == "darwin":
        args += ["-loglevel", "error", "-f", "avfoundation", "-i", ":0"]
    else:
        raise DeviceError("spawn_failed", f"Unsupported platform: {platform}")

    # Fast speech gets a higher sample rate to keep more detail.
    sample_rate = "32000" if speech_speed == "fast" else "16000"
    args += [
        "-ac", "1",
        "-ar", sample_rate,
        "-acodec", "pcm_s16le",
        "-t", str(int(duration)),
        str(output_file),
    ]
    return args


def build_capture_command(
    capture_bin: str, output_file: Path, duration: int, speech_speed: str, platform: str
) -> list[str]:
    return [capture_bin, *build_capture_args(output_file, duration, speech_speed, platform)]


def is_progress_or_metadata(message: str) -> bool:
    is_progress = "size=" in message and "time=" in message and "bitrate=" in message
    is_metadata = "Metadata:" in message or "encoder" in message
    return is_progress or is_metadata


def classify_device_error(message: str) -> Optional[DeviceErrorCategory]:
    if not any(pattern in message for pattern in DEVICE_ERROR_PATTERNS):
        return None
    if "Access denied" in message or "Permission" in message:
        return "permission_denied"
    if "Device not found" in message or "Could not find" in message or "not found" in message:
        return "device_not_found"
    return "device_malfunction"


class RecordingManager:
    def __init__(
        self,
        store: SessionStore,
        publisher: EventPublisher,
        *,
        audio_dir: Path,
        capture_bin: str = "ffmpeg",
        platform: str = "linux",
        stop_grace_sec: float = 1.0,
        command_builder: Optional[CommandBuilder] = None,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._audio_dir = audio_dir
        self._capture_bin = capture_bin
        self._platform = platform
        self._stop_grace_sec = max(0.0, float(stop_grace_sec))
        self._command_builder = command_builder or build_capture_command
        self._process: Optional[asyncio.subprocess.Process] = None
        self._watchers: list[asyncio.Task] = []
        self._error_reported = False

    @property
    def state(self) -> RecorderState:
        return self._store.recorder_state

    def _set_state(self, state: RecorderState) -> None:
        previous = self._store.recorder_state
        self._store.set_recorder_state(state)
        if previous != state:
            logger.debug("Recorder state %s -> %s", previous, state)

    async def start(self, *, duration: int, speech_speed: str = "normal") -> Path:
        if self.state != "idle":
            raise AlreadyRecording()
        self._set_state("starting")
        self._error_reported = False

        # A new recording starts a fresh retry ladder on a clean directory.
        self._store.set_retry_count(0)
        purge_audio_dir(self._audio_dir)
        self._store.set_last_processed_file(None)

        output_file = allocate_output_path(self._audio_dir, ".wav")
        self._store.set_current_output_file(output_file)
        logger.info("Starting new recording to: %s", output_file)

        try:
            cmd = list(
                self._command_builder(
                    self._capture_bin, output_file, int(duration), speech_speed, self._platform
                )
            )
            logger.info("Starting capture with args: %s", " ".join(cmd))
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except DeviceError as exc:
            await self._fail_start(output_file, str(exc.detail or exc))
            raise
        except OSError as exc:
            await self._fail_start(output_file, str(exc))
            raise DeviceError("spawn_failed", str(exc)) from exc

        self._process = process
        self._store.set_recording(True)
        self._set_state("recording")
        self._watchers = [
            asyncio.create_task(self._watch_diagnostics(process, output_file)),
            asyncio.create_task(self._watch_exit(process, output_file)),
        ]
        return output_file

    async def _fail_start(self, output_file: Path, detail: str) -> None:
        logger.error("Capture process error: %s", detail)
        self._store.set_recording(False)
        self._set_state("error")
        safe_unlink(output_file)
        self._store.set_current_output_file(None)
        await self._publisher.emit("error", {"message": DEVICE_ERROR_MESSAGES["spawn_failed"]})
        self._set_state("idle")

    async def _watch_diagnostics(self, process: asyncio.subprocess.Process, output_file: Path) -> None:
        assert process.stderr is not None
        while True:
            raw = await process.stderr.readline()
            if not raw:
                return
            message = raw.decode("utf-8", "replace").strip()
            if not message or is_progress_or_metadata(message):
                continue
            logger.warning("Information from capture process: %s", message)
            category = classify_device_error(message)
            if category is None or self._error_reported:
                continue
            self._error_reported = True
            await self._handle_device_error(process, output_file, category, message)

    async def _handle_device_error(
        self,
        process: asyncio.subprocess.Process,
        output_file: Path,
        category: DeviceErrorCategory,
        detail: str,
    ) -> None:
        if self.state not in ("starting", "recording"):
            return
        self._set_state("error")
        self._store.set_recording(False)
        await self._publisher.emit("error", {"message": DEVICE_ERROR_MESSAGES[category]})
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        safe_unlink(output_file)
        self._store.set_current_output_file(None)
        logger.error("Recording aborted (%s): %s", category, detail)

    async def _watch_exit(self, process: asyncio.subprocess.Process, output_file: Path) -> None:
        code = await process.wait()
        logger.info("Capture process exited with code %s", code)
        if code not in (0, None):
            # Empty output after a crash is noise; non-empty output is kept.
            delete_if_empty(output_file)
        if self._process is not process:
            return
        self._store.set_recording(False)

        state = self.state
        if state == "stopping":
            return
        if state == "error" or code not in (0, None):
            self._store.set_current_output_file(None)
        # A clean exit (duration reached) leaves the file for the next stop request.
        self._process = None
        self._set_state("idle")

    async def stop(self) -> Path:
        process = self._process
        if process is None or self.state != "recording":
            pending = self._store.current_output_file
            if self.state == "idle" and pending:
                self._store.set_current_output_file(None)
                return Path(pending)
            raise NotRecording()

        output_file = self._store.current_output_file
        self._set_state("stopping")
        logger.info("Stopping capture process")
        if process.returncode is None:
            try:
                process.send_signal(signal.SIGINT)
            except ProcessLookupError:
                pass

        await asyncio.sleep(self._stop_grace_sec)
        if process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), timeout=max(self._stop_grace_sec, 0.5))
            except asyncio.TimeoutError:
                logger.warning("Capture process did not exit after interrupt, terminating")
                process.terminate()

        self._process = None
        self._store.set_recording(False)
        self._store.set_current_output_file(None)
        self._set_state("idle")
        if not output_file:
            raise NotRecording()
        return Path(output_file)

    async def shutdown(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        for task in self._watchers:
            task.cancel()
        self._watchers = []
        self._process = None
        self._store.set_recording(False)
        self._set_state("idle")
