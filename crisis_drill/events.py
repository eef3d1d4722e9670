"""Session-scoped publish/subscribe channel for engine notifications.

Subscribers register against a session id (or ``ALL_SESSIONS``) and are
called synchronously when the engine emits. A failing handler is logged and
does not prevent delivery to the remaining handlers.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .models import utc_now

logger = logging.getLogger(__name__)

ALL_SESSIONS = "*"


class EventType(Enum):
    """Notifications the engine produces."""

    INJECT_PUBLISHED = "inject.published"
    INJECT_CANCELLED = "inject.cancelled"


@dataclass
class SessionEvent:
    type: EventType
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def __str__(self) -> str:
        return f"[{self.type.value}:{self.session_id}] {self.data}"


EventHandler = Callable[[SessionEvent], None]


class EventBus:
    """Synchronous event bus keyed by session id."""

    def __init__(self, history_limit: int = 100) -> None:
        self._listeners: Dict[str, List[EventHandler]] = {}
        self._history: List[SessionEvent] = []
        self._history_limit = history_limit
        self._lock = threading.Lock()

    def subscribe(self, session_id: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._listeners.setdefault(session_id, [])
            if handler not in handlers:
                handlers.append(handler)

    def unsubscribe(self, session_id: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._listeners.get(session_id, [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event_type: EventType, session_id: str, **data: Any) -> SessionEvent:
        """Deliver an event to the session's subscribers and to global ones."""

        event = SessionEvent(type=event_type, session_id=session_id, data=data)
        with self._lock:
            self._history.append(event)
            if len(self._history) > self._history_limit:
                self._history = self._history[-self._history_limit:]
            handlers = list(self._listeners.get(session_id, []))
            if session_id != ALL_SESSIONS:
                handlers.extend(self._listeners.get(ALL_SESSIONS, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event_type.value)
        return event

    def history(
        self,
        session_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
    ) -> List[SessionEvent]:
        with self._lock:
            events = list(self._history)
        if session_id is not None:
            events = [e for e in events if e.session_id == session_id]
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        return events

    def listener_count(self, session_id: str) -> int:
        return len(self._listeners.get(session_id, []))

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()
            self._history.clear()


_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get or create the process-wide event bus."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    global _event_bus
    _event_bus = None


__all__ = [
    "ALL_SESSIONS",
    "EventBus",
    "EventType",
    "SessionEvent",
    "get_event_bus",
    "reset_event_bus",
]
