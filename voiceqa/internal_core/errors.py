from __future__ import annotations

from typing import Literal

DeviceErrorCategory = Literal[
    "device_not_found", "permission_denied", "device_malfunction", "spawn_failed"
]

DEVICE_ERROR_MESSAGES: dict[str, str] = {
    "device_not_found": "Audio capture device not found. Check your audio settings.",
    "permission_denied": "Permission denied accessing audio device. Check your permissions.",
    "device_malfunction": "Audio capture device not working properly. Try restarting the application.",
    "spawn_failed": "Failed to start audio capture",
}


class PipelineError(RuntimeError):
    code = "PIPELINE_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class AlreadyRecording(PipelineError):
    code = "ALREADY_RECORDING"

    def __init__(self, message: str = "Already recording"):
        super().__init__(message)


class NotRecording(PipelineError):
    code = "NOT_RECORDING"

    def __init__(self, message: str = "No active recording or audio file provided"):
        super().__init__(message)


class DeviceError(PipelineError):
    code = "DEVICE_ERROR"

    def __init__(self, category: DeviceErrorCategory, detail: str = ""):
        super().__init__(DEVICE_ERROR_MESSAGES[category])
        self.category = category
        self.detail = detail


class AudioFileNotFound(PipelineError):
    code = "FILE_NOT_FOUND"


class EmptyAudioFile(PipelineError):
    code = "EMPTY_FILE"


class AudioFileDisappeared(PipelineError):
    code = "FILE_DISAPPEARED"


class NoAudioAvailable(PipelineError):
    code = "NO_AUDIO_AVAILABLE"


class CancelledMidOperation(PipelineError):
    """Raised inside a pipeline when its operation was cancelled; never surfaced to clients."""

    code = "CANCELLED"

    def __init__(self, message: str = "Processing cancelled"):
        super().__init__(message)


class MissingTranscript(PipelineError):
    code = "NO_TRANSCRIPT"

    def __init__(self, message: str = "No transcript available for streaming"):
        super().__init__(message)
