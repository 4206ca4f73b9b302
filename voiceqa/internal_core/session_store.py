from __future__ import annotations

from pathlib import Path
from threading import RLock
from typing import Optional, Union

from .contracts import RecorderState, SessionSnapshot

PathLike = Union[str, Path]

_PREVIEW_CHARS = 50


def _as_path_str(value: Optional[PathLike]) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text or None


class SessionStore:
    """Process-wide pipeline state; every field is read and written under one lock."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._recording = False
        self._recorder_state: RecorderState = "idle"
        self._current_output_file: Optional[str] = None
        self._last_processed_file: Optional[str] = None
        self._retry_count = 0
        self._cancelled = False
        self._last_question: Optional[str] = None

    @property
    def recording(self) -> bool:
        with self._lock:
            return self._recording

    def set_recording(self, value: bool) -> None:
        with self._lock:
            self._recording = bool(value)

    @property
    def recorder_state(self) -> RecorderState:
        with self._lock:
            return self._recorder_state

    def set_recorder_state(self, state: RecorderState) -> None:
        with self._lock:
            self._recorder_state = state

    @property
    def current_output_file(self) -> Optional[str]:
        with self._lock:
            return self._current_output_file

    def set_current_output_file(self, path: Optional[PathLike]) -> None:
        with self._lock:
            self._current_output_file = _as_path_str(path)

    @property
    def last_processed_file(self) -> Optional[str]:
        with self._lock:
            return self._last_processed_file

    def set_last_processed_file(self, path: Optional[PathLike]) -> None:
        # retry_count only means something relative to this file.
        new_value = _as_path_str(path)
        with self._lock:
            if new_value != self._last_processed_file:
                self._retry_count = 0
            self._last_processed_file = new_value

    @property
    def retry_count(self) -> int:
        with self._lock:
            return self._retry_count

    def set_retry_count(self, value: int) -> None:
        with self._lock:
            self._retry_count = max(0, int(value))

    def take_retry_slot(self) -> int:
        """Return the current retry count and advance it by one atomically."""
        with self._lock:
            current = self._retry_count
            self._retry_count = current + 1
            return current

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def set_cancelled(self, value: bool) -> None:
        with self._lock:
            self._cancelled = bool(value)

    @property
    def last_question(self) -> Optional[str]:
        with self._lock:
            return self._last_question

    def set_last_question(self, question: Optional[str]) -> None:
        with self._lock:
            self._last_question = question or None

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            question = self._last_question
            preview = None
            if question is not None:
                preview = question
                if len(question) > _PREVIEW_CHARS:
                    preview = question[: _PREVIEW_CHARS - 3] + "..."
            return SessionSnapshot(
                is_recording=self._recording,
                current_file=self._current_output_file,
                last_processed_file=self._last_processed_file,
                has_last_question=question is not None,
                last_question_preview=preview,
                retry_count=self._retry_count,
                cancelled=self._cancelled,
                recorder_state=self._recorder_state,
            )
