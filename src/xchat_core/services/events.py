# src/xchat_core/services/events.py
"""Structured events emitted by the messaging core.

Components never print or log progress directly for the host application;
they emit ``ChatEvent`` values to an injected observer. The default
observer forwards them to the standard logging module.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class ChatEventType(Enum):
    """Kinds of events reported to observers."""

    HANDSHAKE_COMPLETED = "handshake_completed"
    MESSAGE_SENT = "message_sent"
    MESSAGE_SEND_FAILED = "message_send_failed"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_REJECTED = "message_rejected"
    CHUNK_PROGRESS = "chunk_progress"
    CHUNK_EVICTED = "chunk_evicted"
    PUSH_STATE_CHANGED = "push_state_changed"


@dataclass(frozen=True)
class ChatEvent:
    """A single observable occurrence with a small detail mapping."""

    type: ChatEventType
    details: Mapping[str, Any] = field(default_factory=dict)


class ChatObserver(Protocol):
    """Receiver of core events."""

    def notify(self, event: ChatEvent) -> None: ...


_WARNING_EVENTS = frozenset(
    {
        ChatEventType.MESSAGE_SEND_FAILED,
        ChatEventType.MESSAGE_REJECTED,
        ChatEventType.CHUNK_EVICTED,
    }
)


class LoggingObserver:
    """Observer that writes every event to a logger."""

    def __init__(self, target: logging.Logger | None = None) -> None:
        self._logger = target or logger

    def notify(self, event: ChatEvent) -> None:
        level = logging.WARNING if event.type in _WARNING_EVENTS else logging.INFO
        detail = " ".join(f"{key}={value}" for key, value in sorted(event.details.items()))
        self._logger.log(level, "[%s] %s", event.type.value, detail)


class RecordingObserver:
    """Observer that keeps every event in memory, in arrival order."""

    def __init__(self) -> None:
        self.events: list[ChatEvent] = []

    def notify(self, event: ChatEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: ChatEventType) -> list[ChatEvent]:
        return [event for event in self.events if event.type == event_type]


def emit(observer: ChatObserver | None, event_type: ChatEventType, **details: Any) -> None:
    """Send an event to ``observer`` if one is configured.

    Observer failures are logged and never propagate into the core.
    """
    if observer is None:
        return
    try:
        observer.notify(ChatEvent(type=event_type, details=details))
    except Exception:
        logger.error("Observer failed handling %s", event_type.value, exc_info=True)
