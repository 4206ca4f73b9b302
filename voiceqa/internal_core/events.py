from __future__ import annotations

"""
Event publishing boundary between the pipeline and client transports.

Design intent:
- Pipeline code only sees `EventPublisher.emit(event, payload)`.
- Transport specifics (websocket fan-out) live behind the interface.
- Events for one operation reach every client in publish order.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Literal, Optional, Protocol

logger = logging.getLogger(__name__)

EventName = Literal[
    "processing",
    "transcript",
    "update",
    "streamChunk",
    "streamEnd",
    "streamError",
    "error",
    "processingCancelled",
]

_QUIET_EVENTS = {"streamChunk"}


class EventPublisher(ABC):
    @abstractmethod
    async def emit(self, event: EventName, payload: Optional[Any] = None) -> None: ...


class _JSONSocket(Protocol):
    async def send_json(self, data: Any) -> None: ...


class WebSocketHub(EventPublisher):
    def __init__(self) -> None:
        self._connections: list[_JSONSocket] = []
        self._send_lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def register(self, websocket: _JSONSocket) -> None:
        self._connections.append(websocket)
        logger.info("Event client connected (total=%d)", len(self._connections))

    def unregister(self, websocket: _JSONSocket) -> None:
        if websocket in self._connections:
            self._connections.remove(websocket)
            logger.info("Event client disconnected (total=%d)", len(self._connections))

    async def emit(self, event: EventName, payload: Optional[Any] = None) -> None:
        if event in _QUIET_EVENTS:
            logger.debug("Broadcasting %s", event)
        elif event in {"error", "streamError"}:
            logger.error("Broadcasting %s: %s", event, payload)
        else:
            logger.info("Broadcasting %s", event)

        message = {"event": event, "data": payload}
        async with self._send_lock:
            dead: list[_JSONSocket] = []
            for websocket in list(self._connections):
                try:
                    await websocket.send_json(message)
                except Exception as exc:
                    logger.warning("Dropping event client after send failure: %s", exc)
                    dead.append(websocket)
            for websocket in dead:
                self.unregister(websocket)
