"""Tagged output events emitted by the session loop."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

EVENT_TYPES = (
    "session-start",
    "step-start",
    "text-delta",
    "reasoning-delta",
    "tool-call",
    "tool-result",
    "step-finish",
    "retry",
    "fallback",
    "error",
    "session-finish",
)

EventSink = Callable[[Dict[str, Any]], None]


class EventEmitter:
    """Stamps events with the session id and a strictly increasing ms timestamp."""

    def __init__(
        self,
        session_id: str,
        sinks: Optional[List[EventSink]] = None,
        *,
        clock: Callable[[], float] = time.time,
        record: bool = True,
    ) -> None:
        self.session_id = session_id
        self._sinks: List[EventSink] = list(sinks or [])
        self._clock = clock
        self._last_ts = 0
        self.record = record
        self.events: List[Dict[str, Any]] = []

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def _timestamp(self) -> int:
        now = int(self._clock() * 1000)
        ts = max(self._last_ts + 1, now)
        self._last_ts = ts
        return ts

    def emit(self, event_type: str, **payload: Any) -> Dict[str, Any]:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown event type {event_type!r}")
        event: Dict[str, Any] = {
            "type": event_type,
            "session_id": self.session_id,
            "timestamp": self._timestamp(),
        }
        event.update(payload)
        if self.record:
            self.events.append(event)
        for sink in self._sinks:
            sink(event)
        return event

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [event for event in self.events if event["type"] == event_type]
