"""Per-user debug event broadcaster for live conversation tracing.

The flow machine emits an event for every inbound message, transition,
oracle outcome, booking and outbound reply.  Each event is pushed to the
asyncio.Queue of every connected subscriber for delivery over WebSocket.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import TypedDict

from intake.store import redact_pii

log = logging.getLogger("intake.debug_events")

EVENT_LOG_LIMIT = 500


class DebugEvent(TypedDict):
    type: str          # inbound | transition | oracle | booking | outbound | error
    timestamp: float
    user_id: str
    state: str
    data: dict


class DebugBroadcaster:
    """Per-user event broadcaster using asyncio.Queue per subscriber."""

    def __init__(self, user_id: str) -> None:
        self._user_id = user_id
        self._subscribers: list[asyncio.Queue[DebugEvent]] = []
        self._event_log: deque[DebugEvent] = deque(maxlen=EVENT_LOG_LIMIT)

    def subscribe(self) -> asyncio.Queue[DebugEvent]:
        q: asyncio.Queue[DebugEvent] = asyncio.Queue(maxsize=200)
        self._subscribers.append(q)
        log.info("Debug subscriber added for %s (total: %d)",
                 redact_pii(self._user_id), len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue[DebugEvent]) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)
        log.info("Debug subscriber removed for %s (total: %d)",
                 redact_pii(self._user_id), len(self._subscribers))

    def emit(self, event_type: str, state: str, data: dict) -> None:
        """Broadcast an event to all subscribers and append to the event log."""
        event: DebugEvent = {
            "type": event_type,
            "timestamp": time.time(),
            "user_id": self._user_id,
            "state": state,
            "data": data,
        }
        self._event_log.append(event)

        for q in self._subscribers:
            if q.full():
                # Drop oldest event to make room
                q.get_nowait()
            q.put_nowait(event)

    @property
    def event_log(self) -> list[DebugEvent]:
        return list(self._event_log)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class BroadcasterRegistry:
    """Broadcasters keyed by user identifier."""

    def __init__(self) -> None:
        self._broadcasters: dict[str, DebugBroadcaster] = {}

    def get(self, user_id: str) -> DebugBroadcaster:
        """Get or create the broadcaster for a user."""
        if user_id not in self._broadcasters:
            self._broadcasters[user_id] = DebugBroadcaster(user_id)
        return self._broadcasters[user_id]

    def find(self, user_id: str) -> DebugBroadcaster | None:
        return self._broadcasters.get(user_id)

    def remove(self, user_id: str) -> None:
        broadcaster = self._broadcasters.get(user_id)
        if broadcaster is not None and broadcaster.subscriber_count == 0:
            del self._broadcasters[user_id]
