"""
relay.py — fan-out of accepted crossing events to every other Active session.

Ordering:
- `accept()` is synchronous and each session's read loop calls it one event at
  a time, in the order the events arrived. `Session.deliver()` appends to a
  per-destination FIFO. Together that keeps every origin's events in order at
  every destination. Events from different origins have no order relative to
  each other.

Backpressure:
- `deliver()` never blocks. A destination whose outbound queue is full parks
  further events in its own backlog and waits for room on its own; the other
  destinations keep going. See `Session.deliver()`.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from . import messages as m
from .events import NotificationKind, Notifier
from .registry import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class RelayStats:
    events_accepted: int = 0
    deliveries: int = 0
    dropped: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "events_accepted": self.events_accepted,
            "deliveries": self.deliveries,
            "dropped": self.dropped,
        }


class RelayEngine:
    """Takes one validated CrossingEvent at a time and fans it out."""

    def __init__(self, registry: SessionRegistry, notifier: Optional[Notifier] = None) -> None:
        self.registry = registry
        self.notifier = notifier or Notifier()
        self.stats = RelayStats()

    def accept(self, event: m.CrossingEvent) -> int:
        """
        Deliver `event` to every session Active right now, except its origin.

        Returns the number of destinations that took the event. Destinations
        that close in the meantime just drop it.
        """
        destinations = self.registry.snapshot(exclude=event.origin)
        frame = m.relayed(event)

        delivered = 0
        for dest in destinations:
            if dest.deliver(frame):
                delivered += 1

        self.stats.events_accepted += 1
        self.stats.deliveries += delivered
        self.stats.dropped += len(destinations) - delivered

        logger.debug("relayed %s/%r#%d to %d of %d", event.origin, event.channel,
                     event.seq, delivered, len(destinations))
        self.notifier.emit(
            NotificationKind.EVENT_RELAYED,
            session_id=event.origin,
            detail={
                "seq": event.seq,
                "channel": event.channel,
                "size": len(event.payload),
                "delivered": delivered,
            },
        )
        return delivered
