from __future__ import annotations

import asyncio
import itertools
import logging
from threading import Lock
from typing import Optional

from .errors import CancelledMidOperation
from .events import EventPublisher
from .session_store import SessionStore

logger = logging.getLogger(__name__)

_operation_ids = itertools.count(1)


class CancellationToken:
    """Advisory cancellation for one pipeline operation; checked after every suspension point."""

    def __init__(self, operation: str) -> None:
        self.operation_id = next(_operation_ids)
        self.operation = operation
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancelledMidOperation()

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"<CancellationToken #{self.operation_id} {self.operation} {state}>"


class CancellationController:
    def __init__(
        self,
        store: SessionStore,
        publisher: EventPublisher,
        *,
        rearm_delay_sec: float = 1.0,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._rearm_delay_sec = max(0.0, float(rearm_delay_sec))
        self._lock = Lock()
        self._active: dict[int, CancellationToken] = {}
        self._generation = 0
        self._rearm_handle: Optional[asyncio.TimerHandle] = None

    def begin(self, operation: str) -> CancellationToken:
        token = CancellationToken(operation)
        with self._lock:
            self._active[token.operation_id] = token
        # A new operation is never blocked by a stale flag.
        self._store.set_cancelled(False)
        logger.debug("Operation started: %r", token)
        return token

    def finish(self, token: CancellationToken) -> None:
        with self._lock:
            self._active.pop(token.operation_id, None)

    @property
    def active_operations(self) -> list[CancellationToken]:
        with self._lock:
            return list(self._active.values())

    async def cancel(self) -> int:
        """Mark every in-flight operation cancelled and tell clients; returns how many were active."""
        with self._lock:
            tokens = list(self._active.values())
            self._generation += 1
            generation = self._generation
        self._store.set_cancelled(True)
        for token in tokens:
            token.cancel()
        logger.info("Processing cancelled (in-flight operations=%d)", len(tokens))

        await self._publisher.emit("processingCancelled", {"message": "Processing cancelled"})
        self._schedule_rearm(generation)
        return len(tokens)

    def _schedule_rearm(self, generation: int) -> None:
        loop = asyncio.get_running_loop()
        if self._rearm_handle is not None:
            self._rearm_handle.cancel()
        self._rearm_handle = loop.call_later(self._rearm_delay_sec, self._rearm, generation)

    def _rearm(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
        self._store.set_cancelled(False)
        logger.info("Cancelled state reset for next operation")
