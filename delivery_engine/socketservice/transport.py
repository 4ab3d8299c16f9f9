"""Transports that deliver events to connected cluster agents."""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Set, Tuple

from delivery_engine.core.errors import AgentNotConnectedError
from delivery_engine.socketservice.events_model import (
    APP_INFORMERS_EVENT,
    DEPLOY_EVENT,
    SUPPORT_BUNDLE_EVENT,
)

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    DEPLOY_EVENT,
    APP_INFORMERS_EVENT,
    SUPPORT_BUNDLE_EVENT,
}


class Transport(ABC):
    """
    Fire-and-forget delivery to agent connections.

    Connections join one room per cluster.
    """

    def __init__(self):
        self._rooms: Dict[str, Set[str]] = {}
        self._rooms_lock = threading.Lock()

    @abstractmethod
    def emit(self, connection_id: str, event: str, payload: Dict[str, Any]) -> None:
        """
        Hand an event to the connection without waiting for delivery.

        Raises AgentNotConnectedError if the connection is unknown.
        """
        raise NotImplementedError

    def join(self, connection_id: str, room: str) -> None:
        with self._rooms_lock:
            self._rooms.setdefault(room, set()).add(connection_id)

    def leave_all(self, connection_id: str) -> None:
        with self._rooms_lock:
            for room in list(self._rooms):
                self._rooms[room].discard(connection_id)
                if not self._rooms[room]:
                    del self._rooms[room]

    def room_members(self, room: str) -> Set[str]:
        with self._rooms_lock:
            return set(self._rooms.get(room, set()))

    @staticmethod
    def _validate(event: str) -> None:
        if event not in ALLOWED_EVENTS:
            raise ValueError(f"Invalid event type: {event}")


# ============================================
# RECORDING TRANSPORT
# ============================================

@dataclass
class SentEvent:
    connection_id: str
    event: str
    payload: Dict[str, Any]


class RecordingTransport(Transport):
    """In-memory transport used for tests and local runs."""

    def __init__(self):
        super().__init__()
        self.connected: Set[str] = set()
        self.events: List[SentEvent] = []

    def connect(self, connection_id: str) -> None:
        self.connected.add(connection_id)

    def disconnect(self, connection_id: str) -> None:
        self.connected.discard(connection_id)

    def emit(self, connection_id: str, event: str, payload: Dict[str, Any]) -> None:
        self._validate(event)
        if connection_id not in self.connected:
            raise AgentNotConnectedError(f"Connection {connection_id} not found")

        self.events.append(SentEvent(connection_id, event, payload))
        logger.debug(f"[EVENT] {event} | connection={connection_id}")

    def events_named(self, event: str) -> List[SentEvent]:
        return [e for e in self.events if e.event == event]


# ============================================
# WEBSOCKET TRANSPORT
# ============================================

class WebSocketTransport(Transport):
    """
    Sends JSON frames {"event": ..., "data": ...} over FastAPI websockets.

    Loops run on plain threads, so sends are scheduled onto the event loop
    that owns the socket and never awaited.
    """

    def __init__(self):
        super().__init__()
        self._sockets: Dict[str, Tuple[Any, asyncio.AbstractEventLoop]] = {}
        self._sockets_lock = threading.Lock()

    def register(self, connection_id: str, websocket, loop: asyncio.AbstractEventLoop) -> None:
        with self._sockets_lock:
            self._sockets[connection_id] = (websocket, loop)

    def unregister(self, connection_id: str) -> None:
        with self._sockets_lock:
            self._sockets.pop(connection_id, None)
        self.leave_all(connection_id)

    def emit(self, connection_id: str, event: str, payload: Dict[str, Any]) -> None:
        self._validate(event)

        with self._sockets_lock:
            entry = self._sockets.get(connection_id)
        if entry is None:
            raise AgentNotConnectedError(f"Connection {connection_id} not found")

        websocket, loop = entry
        if loop.is_closed():
            raise AgentNotConnectedError(f"Event loop for {connection_id} is closed")

        future = asyncio.run_coroutine_threadsafe(
            websocket.send_json({"event": event, "data": payload}),
            loop,
        )
        future.add_done_callback(
            lambda f: self._log_send_failure(f, connection_id, event)
        )

    @staticmethod
    def _log_send_failure(future, connection_id: str, event: str) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning(f"[transport] Failed to send {event} to {connection_id}: {error}")
