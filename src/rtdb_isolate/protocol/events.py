"""Event definitions for the protocol layer.

Events flow from the worker back to the client. Every event produced for a
command carries that command's id as `correlation_id`:

- Single-shot commands produce exactly one final `result` or `error` event.
- Subscriptions produce any number of `query.event` events with increasing
  `sequence` numbers, ended by a final `stream.end` or `error` event.
- `connected` is uncorrelated and announces a worker.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types in the protocol."""

    RESULT = "result"
    ERROR = "error"
    QUERY_EVENT = "query.event"
    STREAM_END = "stream.end"
    CONNECTED = "connected"


class Event(BaseModel):
    """An event from the worker to the client.

    Example (result of a setPersistenceEnabled command):
        {
            "id": "evt_xyz789",
            "type": "result",
            "correlation_id": "cmd_abc123",
            "data": {"value": true},
            "final": true
        }

    Example (subscription event):
        {
            "id": "evt_001",
            "type": "query.event",
            "correlation_id": "cmd_abc123",
            "data": {"event": {"type": "value", "snapshot": {...}}},
            "sequence": 0
        }
    """

    id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}")
    type: str
    correlation_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    sequence: int | None = None
    final: bool = False

    def is_correlated(self) -> bool:
        return self.correlation_id is not None

    def is_error(self) -> bool:
        return self.type == EventType.ERROR.value

    @classmethod
    def create(
        cls,
        event_type: str | EventType,
        data: dict[str, Any] | None = None,
        correlation_id: str | None = None,
        sequence: int | None = None,
        final: bool = False,
    ) -> Event:
        """Factory method for creating events."""
        return cls(
            type=event_type.value if isinstance(event_type, EventType) else event_type,
            data=data or {},
            correlation_id=correlation_id,
            sequence=sequence,
            final=final,
        )

    @classmethod
    def result(cls, correlation_id: str, value: Any = None) -> Event:
        """Create the final result event of a single-shot command."""
        return cls.create(
            EventType.RESULT,
            data={"value": value},
            correlation_id=correlation_id,
            final=True,
        )

    @classmethod
    def error(
        cls,
        correlation_id: str | None,
        error: str,
        code: str | None = None,
    ) -> Event:
        """Create an error event."""
        data: dict[str, Any] = {"error": error}
        if code:
            data["code"] = code
        return cls.create(
            EventType.ERROR,
            data=data,
            correlation_id=correlation_id,
            final=True,
        )

    @classmethod
    def query_event(cls, correlation_id: str, event: dict[str, Any], sequence: int) -> Event:
        """Create a subscription event carrying a serialized QueryEvent."""
        return cls.create(
            EventType.QUERY_EVENT,
            data={"event": event},
            correlation_id=correlation_id,
            sequence=sequence,
        )

    @classmethod
    def stream_end(cls, correlation_id: str, sequence: int | None = None) -> Event:
        """Create the final event of a subscription the worker closed."""
        return cls.create(
            EventType.STREAM_END,
            correlation_id=correlation_id,
            sequence=sequence,
            final=True,
        )

    @classmethod
    def connected(cls, info: dict[str, Any] | None = None) -> Event:
        """Create a connected event (sent when a worker accepts a client)."""
        return cls.create(EventType.CONNECTED, data=info or {})
