from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FollowUpContext:
    previous_question: Optional[str]
    context_missing: bool = False


class FollowUpContextManager:
    def __init__(self, store: SessionStore) -> None:
        self._store = store

    def resolve(self, is_follow_up: bool, transcript: str) -> FollowUpContext:
        if is_follow_up:
            previous = self._store.last_question
            if previous is None:
                logger.warning(
                    "Follow-up requested but no previous question exists - proceeding without context"
                )
                return FollowUpContext(previous_question=None, context_missing=True)
            return FollowUpContext(previous_question=previous)

        if transcript and transcript.strip():
            self._store.set_last_question(transcript)
            logger.info("Storing new question: %s", transcript)
        return FollowUpContext(previous_question=None)
