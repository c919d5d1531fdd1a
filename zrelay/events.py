"""
events.py — lifecycle notifications the core emits for an outside reporter.

The core never prints. Anything an operator might want to see (a session
opening, authenticating, closing, an event being relayed, an error) is emitted
as a Notification; `run_server.Reporter` is one subscriber that renders them.
"""

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class NotificationKind(enum.Enum):
    LISTENING = "listening"
    SESSION_OPENED = "session_opened"
    SESSION_AUTHENTICATED = "session_authenticated"
    SESSION_CLOSED = "session_closed"
    EVENT_RELAYED = "event_relayed"
    ERROR = "error"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    session_id: Optional[int] = None
    peer: Optional[str] = None
    reason: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Subscriber = Callable[[Notification], None]


class Notifier:
    """Synchronous fan-out of notifications to subscribers."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers.remove(callback)

    def emit(self, kind: NotificationKind, **kwargs: Any) -> Notification:
        note = Notification(kind, **kwargs)
        for callback in list(self._subscribers):
            try:
                callback(note)
            except Exception:
                # A broken reporter must not take a session down with it.
                logger.exception("Notification subscriber failed on %s", kind.value)
        return note
