"""
Session event channel.

A workflow pushes events into an EventChannel; the consumer pulls them until
a terminal event (complete or error) arrives. Exactly one terminal event is
ever delivered: anything emitted after it is dropped and logged.

Events serialize as {"type": ..., ...fields} and frame as SSE via to_sse().
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from buildloop.core.logging_config import logger


class EventType(str, Enum):
    """Event variants a workflow can emit"""
    STATUS = "status"
    CHUNK = "chunk"
    CHANGES = "changes"
    DIAGNOSTICS = "diagnostics"
    ERROR = "error"
    COMPLETE = "complete"


TERMINAL_EVENTS = {EventType.COMPLETE, EventType.ERROR}


@dataclass
class SessionEvent:
    """One event in a session workflow stream"""
    type: EventType
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, **self.data}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_sse(self) -> str:
        """Format for Server-Sent Events"""
        return f"data: {self.to_json()}\n\n"


EventHandler = Callable[[SessionEvent], None]


class EventChannel:
    """
    Single-producer, single-consumer event stream for one workflow run.

    An optional on_event callback sees every delivered event as it is
    emitted, for callers that prefer push over pull.
    """

    def __init__(self, session_id: str, on_event: Optional[EventHandler] = None):
        self.session_id = session_id
        self.on_event = on_event
        self._queue: asyncio.Queue = asyncio.Queue()
        self._terminal: Optional[SessionEvent] = None
        self._dropped = 0
        self._drained = False

    @property
    def closed(self) -> bool:
        return self._terminal is not None

    @property
    def terminal_event(self) -> Optional[SessionEvent]:
        return self._terminal

    def emit(self, event_type: EventType, **data) -> bool:
        """Push an event. Returns False if the channel already terminated."""
        event = SessionEvent(type=EventType(event_type), session_id=self.session_id, data=data)
        if self._terminal is not None:
            self._dropped += 1
            logger.warning(
                f"[Events:{self.session_id}] Dropped {event.type.value} event after "
                f"terminal {self._terminal.type.value}"
            )
            return False

        if event.terminal:
            self._terminal = event
        self._queue.put_nowait(event)

        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception as e:
                logger.error(f"[Events:{self.session_id}] on_event callback failed: {e}")
        return True

    # Convenience emitters
    def status(self, message: str) -> bool:
        return self.emit(EventType.STATUS, message=message)

    def chunk(self, content: str) -> bool:
        return self.emit(EventType.CHUNK, content=content)

    def changes(self, files: List[str], message: str = "Code updated") -> bool:
        return self.emit(EventType.CHANGES, message=message, files=files)

    def diagnostics(self, errors: List[str], **data) -> bool:
        return self.emit(EventType.DIAGNOSTICS, errors=errors, **data)

    def error(self, message: str, **data) -> bool:
        return self.emit(EventType.ERROR, message=message, **data)

    def complete(self, **data) -> bool:
        return self.emit(EventType.COMPLETE, **data)

    # Consumer side
    async def next(self) -> Optional[SessionEvent]:
        """Next event, or None once the terminal event has been consumed"""
        if self._drained:
            return None
        event = await self._queue.get()
        if event.terminal:
            self._drained = True
        return event

    async def __aiter__(self) -> AsyncIterator[SessionEvent]:
        while True:
            event = await self.next()
            if event is None:
                return
            yield event
            if event.terminal:
                return

    async def collect(self) -> List[SessionEvent]:
        """Consume everything up to and including the terminal event"""
        return [event async for event in self]
